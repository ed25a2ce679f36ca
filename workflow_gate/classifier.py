"""
Command classification.

Maps a proposed command to local-read, local-write or remote-write using
ordered rule data (bundled default_rules.yaml plus project extras).
Classification is pure and deterministic, and fails closed: anything the
rules cannot place is remote-write.
"""

import importlib.resources
import logging
import re
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

import yaml

from .errors import ConfigurationError
from .schema import Category, Classification

logger = logging.getLogger(__name__)

# Tokens that separate independent commands in a shell line
COMMAND_SEPARATORS = {"&&", "||", ";", "|", "&", ";;", "|&"}

# Leading words that do not change what a command does
TRANSPARENT_PREFIXES = {"sudo", "env", "command", "nohup", "time", "exec"}

_ASSIGNMENT = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=")

RULE_EMPTY = "empty-command"
RULE_UNPARSEABLE = "unparseable"
RULE_UNRECOGNIZED = "unrecognized"


@dataclass
class ClassifierRule:
    """A single named classification rule."""
    name: str
    category: Category
    pattern: str
    description: str = ""
    regex: re.Pattern = field(init=False, repr=False)

    def __post_init__(self):
        try:
            self.regex = re.compile(self.pattern, re.IGNORECASE)
        except re.error as e:
            raise ConfigurationError(f"Invalid pattern for classifier rule '{self.name}': {e}")

    def matches(self, segment: str) -> bool:
        return self.regex.search(segment) is not None


def parse_rules(data: dict, source: str = "<rules>") -> List[ClassifierRule]:
    """Parse rule definitions loaded from YAML."""
    if not isinstance(data, dict) or not isinstance(data.get("rules"), list):
        raise ConfigurationError(f"{source}: expected a mapping with a 'rules' list")

    rules = []
    for i, rule_dict in enumerate(data["rules"]):
        if not isinstance(rule_dict, dict):
            raise ConfigurationError(f"{source}: rule #{i} is not a mapping")
        name = rule_dict.get("name")
        if not name:
            raise ConfigurationError(f"{source}: rule #{i} missing 'name' field")
        try:
            category = Category(rule_dict.get("category"))
        except ValueError:
            raise ConfigurationError(
                f"{source}: rule '{name}' has invalid category {rule_dict.get('category')!r}"
            )
        pattern = rule_dict.get("pattern")
        if not pattern:
            raise ConfigurationError(f"{source}: rule '{name}' missing 'pattern' field")
        rules.append(ClassifierRule(
            name=name,
            category=category,
            pattern=pattern,
            description=rule_dict.get("description", ""),
        ))
    return rules


def load_rules(path: Optional[Path] = None) -> List[ClassifierRule]:
    """
    Load classifier rules from a YAML file.

    Args:
        path: Rules file. Defaults to the default_rules.yaml bundled with
              the package.

    Raises:
        ConfigurationError: If the file is missing or malformed.
    """
    if path is None:
        source = "default_rules.yaml"
        content = importlib.resources.files("workflow_gate").joinpath(source).read_text()
    else:
        source = str(path)
        try:
            content = Path(path).read_text()
        except OSError as e:
            raise ConfigurationError(f"Cannot read classifier rules {path}: {e}")

    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"{source}: invalid YAML: {e}")
    return parse_rules(data, source)


class CommandClassifier:
    """
    Classifies proposed commands.

    Rules are checked in order and the first match wins for a segment.
    For compound commands the most restrictive segment decides.
    """

    def __init__(
        self,
        rules: Optional[List[ClassifierRule]] = None,
        extra_rules: Optional[List[ClassifierRule]] = None,
    ):
        base = rules if rules is not None else load_rules()
        self.rules: List[ClassifierRule] = list(extra_rules or []) + list(base)

    def rule_names(self) -> List[str]:
        return [rule.name for rule in self.rules]

    def classify(self, command: str) -> Classification:
        """Classify a command string."""
        normalized = normalize_command(command)
        if not normalized:
            return Classification(command=normalized, category=Category.REMOTE_WRITE, rule=RULE_EMPTY)

        segments = split_segments(normalized)
        if segments is None:
            return Classification(
                command=normalized, category=Category.REMOTE_WRITE, rule=RULE_UNPARSEABLE
            )

        worst: Optional[Classification] = None
        for segment in segments:
            result = self._classify_segment(normalized, segment)
            if worst is None or result.category.severity > worst.category.severity:
                worst = result

        if worst is None:
            # Nothing but prefixes such as `sudo` or `env`
            return Classification(
                command=normalized, category=Category.REMOTE_WRITE, rule=RULE_UNRECOGNIZED
            )
        return worst

    def _classify_segment(self, command: str, segment: str) -> Classification:
        for rule in self.rules:
            if rule.matches(segment):
                return Classification(command=command, category=rule.category, rule=rule.name)
        logger.debug(f"No classifier rule matched '{segment}', treating as remote-write")
        return Classification(command=command, category=Category.REMOTE_WRITE, rule=RULE_UNRECOGNIZED)


def normalize_command(command: str) -> str:
    """Strip and collapse whitespace."""
    return " ".join((command or "").split())


def split_segments(command: str) -> Optional[List[str]]:
    """
    Split a shell line into its independent commands.

    Uses shlex so separators inside quotes are not treated as separators.
    Returns None when the line cannot be parsed (e.g. unbalanced quotes).
    """
    lexer = shlex.shlex(command, posix=True, punctuation_chars=True)
    lexer.whitespace_split = True
    try:
        tokens = list(lexer)
    except ValueError:
        return None

    segments: List[str] = []
    current: List[str] = []
    for token in tokens:
        if token in COMMAND_SEPARATORS:
            if current:
                segments.append(_join(current))
            current = []
        else:
            current.append(token)
    if current:
        segments.append(_join(current))
    return [s for s in segments if s]


def _join(tokens: List[str]) -> str:
    """Rejoin a segment's tokens without its transparent prefixes."""
    while tokens and (tokens[0] in TRANSPARENT_PREFIXES or _ASSIGNMENT.match(tokens[0])):
        tokens = tokens[1:]
    return " ".join(tokens)
