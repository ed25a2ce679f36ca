"""Path resolution for workflow gate files.

Directory structure:
    <repo root>/
    ├── .workflow_gate.yaml     # Project config (optional)
    └── .workflow_gate/
        ├── gate.db             # Tasks, checkpoints, ledger, audit log
        └── context/            # Markdown context mirror
"""

from pathlib import Path
from typing import Optional

CONFIG_FILENAME = ".workflow_gate.yaml"
GATE_DIRNAME = ".workflow_gate"


class GatePaths:
    """Centralized path resolution"""

    def __init__(self, base_dir: Optional[Path] = None):
        """Initialize path resolver.

        Args:
            base_dir: Repository root directory. If None, auto-detects by
                     walking up to find .git/ or .workflow_gate.yaml
        """
        self.base_dir = Path(base_dir) if base_dir else self._find_repo_root()
        self.gate_dir = self.base_dir / GATE_DIRNAME

    def _find_repo_root(self) -> Path:
        """Walk up to find repo root.

        Falls back to cwd if no marker is found.
        """
        cwd = Path.cwd()
        for parent in [cwd, *cwd.parents]:
            if (parent / ".git").exists():
                return parent
            if (parent / CONFIG_FILENAME).exists():
                return parent
        return cwd

    def config_file(self) -> Path:
        return self.base_dir / CONFIG_FILENAME

    def resolve(self, path: Path) -> Path:
        """Resolve a configured path against the repo root."""
        path = Path(path)
        return path if path.is_absolute() else self.base_dir / path

    def db_file(self, configured: Optional[Path] = None) -> Path:
        if configured is not None:
            return self.resolve(configured)
        return self.gate_dir / "gate.db"

    def context_dir(self, configured: Optional[Path] = None) -> Path:
        if configured is not None:
            return self.resolve(configured)
        return self.gate_dir / "context"

    def ensure_dirs(self) -> None:
        self.gate_dir.mkdir(parents=True, exist_ok=True)
