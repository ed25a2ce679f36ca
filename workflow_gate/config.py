"""
Project configuration for workflow-gate.

Settings come from `.workflow_gate.yaml` in the repository root. A missing
file means defaults; a malformed one is a ConfigurationError.

Example:
    db_path: .workflow_gate/gate.db
    log_level: INFO
    classifier:
      rules_file: ci/gate_rules.yaml
      extra_rules:
        - name: deploy-script
          category: remote-write
          pattern: '^\\./deploy\\.sh'
    checkpoint:
      branch_prefix: workflow-gate/rollback
    report:
      extras_dir: .extras
    context:
      directory: .workflow_gate/context
"""

import logging
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from .classifier import ClassifierRule, CommandClassifier, load_rules, parse_rules
from .errors import ConfigurationError
from .paths import GatePaths

logger = logging.getLogger(__name__)

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class ClassifierSettings(BaseModel):
    rules_file: Optional[Path] = None
    extra_rules: list[dict[str, Any]] = Field(default_factory=list)


class CheckpointSettings(BaseModel):
    branch_prefix: str = "workflow-gate/rollback"

    @field_validator('branch_prefix')
    @classmethod
    def prefix_not_empty(cls, v):
        if not v.strip("/ "):
            raise ValueError('branch_prefix cannot be empty')
        return v


class ReportSettings(BaseModel):
    extras_dir: Path = Path(".extras")


class ContextSettings(BaseModel):
    directory: Optional[Path] = None
    enabled: bool = True


class GateConfig(BaseModel):
    """Validated contents of .workflow_gate.yaml."""
    db_path: Optional[Path] = None
    log_level: str = "INFO"
    classifier: ClassifierSettings = Field(default_factory=ClassifierSettings)
    checkpoint: CheckpointSettings = Field(default_factory=CheckpointSettings)
    report: ReportSettings = Field(default_factory=ReportSettings)
    context: ContextSettings = Field(default_factory=ContextSettings)

    model_config = {"extra": "forbid"}

    @field_validator('log_level')
    @classmethod
    def log_level_known(cls, v):
        level = str(v).upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of {', '.join(LOG_LEVELS)}")
        return level

    def build_classifier(self, paths: GatePaths) -> CommandClassifier:
        """Classifier with project rules ahead of the base rule set."""
        base = None
        if self.classifier.rules_file is not None:
            base = load_rules(paths.resolve(self.classifier.rules_file))
        extra: list[ClassifierRule] = []
        if self.classifier.extra_rules:
            extra = parse_rules(
                {"rules": self.classifier.extra_rules},
                source="classifier.extra_rules",
            )
        return CommandClassifier(rules=base, extra_rules=extra)


def load_config(paths: Optional[GatePaths] = None) -> GateConfig:
    """
    Load `.workflow_gate.yaml` from the repository root.

    Returns:
        GateConfig with defaults for anything not set.

    Raises:
        ConfigurationError: If the file cannot be read or is invalid.
    """
    paths = paths or GatePaths()
    config_file = paths.config_file()
    if not config_file.exists():
        return GateConfig()

    try:
        with open(config_file) as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Cannot read {config_file}: {e}")

    if data is None:
        return GateConfig()
    if not isinstance(data, dict):
        raise ConfigurationError(f"{config_file}: expected a mapping at top level")

    try:
        config = GateConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"{config_file}: {e}")

    logger.debug(f"Loaded config from {config_file}")
    return config
