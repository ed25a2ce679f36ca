"""
Small shared helpers.
"""

import os
import re
import tempfile
from pathlib import Path


def slugify(text: str, max_length: int = 40) -> str:
    """
    Convert text to a filename-safe slug.

    Args:
        text: Input text to slugify
        max_length: Maximum length of output (default: 40)

    Returns:
        Lowercase string with only alphanumeric chars and hyphens
    """
    # Lowercase and replace separators with hyphens
    slug = text.lower().strip()
    slug = re.sub(r'[\s_/.:]+', '-', slug)
    slug = re.sub(r'[^a-z0-9-]', '', slug)
    slug = re.sub(r'-+', '-', slug)
    slug = slug.strip('-')
    if len(slug) > max_length:
        slug = slug[:max_length].rstrip('-')
    return slug or 'untitled'


def atomic_write_text(path: Path, content: str) -> None:
    """Write a file via temp file + rename so readers never see a partial write."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        os.replace(temp_name, path)
    except BaseException:
        if os.path.exists(temp_name):
            os.unlink(temp_name)
        raise
