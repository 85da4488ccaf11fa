# config.py — Release configuration models and file loading.
# Reads YAML or JSON release/validation config files into validated Pydantic models.

from __future__ import annotations

import logging
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, ValidationError, model_validator
from pydantic.alias_generators import to_camel

from policyrelease.errors import ConfigLoadError
from policyrelease.models import RecoveryPolicy, ReleaseStrategy, ValidationConfig

logger = logging.getLogger(__name__)


class TargetConfig(BaseModel):
    """One publish target, selected by ``kind``.

    Attributes:
        name:              Unique target name used in reports.
        kind:              ``memory``, ``filesystem`` or ``registry``.
        supports_rollback: Whether compensating deletes are allowed.
        path:              Artifact store directory (``filesystem``).
        url:               Registry base URL (``registry``).
        token_env:         Environment variable holding the registry token.
        timeout_seconds:   Per-request timeout (``registry``).
    """

    model_config = {"alias_generator": to_camel, "populate_by_name": True}

    name: str = Field(..., min_length=1)
    kind: Literal["memory", "filesystem", "registry"]
    supports_rollback: bool = True
    path: str | None = None
    url: str | None = None
    token_env: str | None = None
    timeout_seconds: float = Field(default=30.0, gt=0)

    @model_validator(mode="after")
    def _kind_settings(self) -> "TargetConfig":
        if self.kind == "filesystem" and not self.path:
            raise ValueError(f"target '{self.name}': filesystem targets need 'path'")
        if self.kind == "registry" and not self.url:
            raise ValueError(f"target '{self.name}': registry targets need 'url'")
        return self


class BackoffSettings(BaseModel):
    """Exponential backoff between publish retries.

    ``delay = min(base_seconds * 2 ** (attempt - 1), max_seconds)``
    """

    model_config = {"alias_generator": to_camel, "populate_by_name": True}

    base_seconds: float = Field(default=1.0, ge=0)
    max_seconds: float = Field(default=60.0, ge=0)

    def delay_for(self, attempt_number: int) -> float:
        """Delay to wait after failed attempt *attempt_number* (1-based)."""
        return min(self.base_seconds * (2 ** max(attempt_number - 1, 0)), self.max_seconds)


class ReleaseConfig(BaseModel):
    """Everything a release run is parameterised by."""

    model_config = {"alias_generator": to_camel, "populate_by_name": True}

    policies_root: str = "policies"
    strategy: ReleaseStrategy = ReleaseStrategy.ATOMIC
    validation: ValidationConfig = Field(default_factory=ValidationConfig)
    recovery: RecoveryPolicy = Field(default_factory=RecoveryPolicy)
    targets: list[TargetConfig] = Field(default_factory=list)
    backoff: BackoffSettings = Field(default_factory=BackoffSettings)

    @model_validator(mode="after")
    def _unique_targets(self) -> "ReleaseConfig":
        names = [t.name for t in self.targets]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"duplicate target name(s): {', '.join(duplicates)}")
        return self


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def _read_mapping(path: str | Path) -> dict:
    filepath = Path(path)
    if not filepath.exists():
        raise ConfigLoadError(f"Config file not found: {filepath}")

    try:
        # JSON is a subset of YAML, so one parser covers both formats.
        data = yaml.safe_load(filepath.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigLoadError(f"Malformed config in {filepath}: {exc}") from exc

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigLoadError(
            f"Expected a mapping at the root of {filepath}, got {type(data).__name__}"
        )
    return data


def load_release_config(path: str | Path) -> ReleaseConfig:
    """Load a release configuration file (YAML or JSON).

    Raises:
        ConfigLoadError: If the file is missing, malformed, or fails
            validation.  Validation errors are chained as ``__cause__``.
    """
    data = _read_mapping(path)
    try:
        config = ReleaseConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigLoadError(f"Invalid release config {path}:\n{exc}") from exc
    logger.debug("Loaded release config from %s (%d target(s))", path, len(config.targets))
    return config


def load_validation_config(path: str | Path) -> ValidationConfig:
    """Load a standalone validation rules file (YAML or JSON).

    Raises:
        ConfigLoadError: If the file is missing, malformed, or fails validation.
    """
    data = _read_mapping(path)
    try:
        return ValidationConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigLoadError(f"Invalid validation config {path}:\n{exc}") from exc
