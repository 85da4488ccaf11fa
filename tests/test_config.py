# test_config.py — Tests for release configuration loading.

from __future__ import annotations

import json
from pathlib import Path

import pytest
import yaml

from policyrelease.config import (
    BackoffSettings,
    ReleaseConfig,
    TargetConfig,
    load_release_config,
    load_validation_config,
)
from policyrelease.errors import ConfigLoadError
from policyrelease.models import RecoveryStrategy, ReleaseStrategy

# ---------------------------------------------------------------------------
# Shared test data
# ---------------------------------------------------------------------------

_RELEASE_CONFIG: dict = {
    "policiesRoot": "contrib/policies",
    "strategy": "best_effort",
    "validation": {
        "requiredFiles": ["metadata.json"],
        "strictValidation": False,
        "maxParallelJobs": 8,
    },
    "recovery": {
        "strategy": "hybrid",
        "rollbackOnPartialFailure": False,
        "maxRetryAttempts": 2,
    },
    "targets": [
        {"name": "store", "kind": "filesystem", "path": "/srv/artifacts"},
        {"name": "registry", "kind": "registry", "url": "https://r.example.com", "supportsRollback": False},
    ],
    "backoff": {"baseSeconds": 0.5, "maxSeconds": 4},
}


def _write(path: Path, data: dict | str) -> Path:
    text = data if isinstance(data, str) else yaml.dump(data, sort_keys=False)
    path.write_text(text, encoding="utf-8")
    return path


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class TestBackoffSettings:
    """Exponential, capped retry delays."""

    def test_doubles_per_attempt(self) -> None:
        backoff = BackoffSettings(base_seconds=1, max_seconds=60)
        assert [backoff.delay_for(n) for n in (1, 2, 3, 4)] == [1, 2, 4, 8]

    def test_capped(self) -> None:
        assert BackoffSettings(base_seconds=10, max_seconds=15).delay_for(3) == 15

    def test_zero_base_means_no_delay(self) -> None:
        assert BackoffSettings(base_seconds=0).delay_for(5) == 0


class TestTargetConfig:
    """Per-kind required settings."""

    def test_filesystem_needs_path(self) -> None:
        with pytest.raises(ValueError, match="need 'path'"):
            TargetConfig(name="fs", kind="filesystem")

    def test_registry_needs_url(self) -> None:
        with pytest.raises(ValueError, match="need 'url'"):
            TargetConfig(name="r", kind="registry")

    def test_unknown_kind_rejected(self) -> None:
        with pytest.raises(ValueError):
            TargetConfig(name="x", kind="ftp")


class TestReleaseConfig:
    """Top-level release configuration."""

    def test_defaults(self) -> None:
        config = ReleaseConfig()
        assert config.policies_root == "policies"
        assert config.strategy is ReleaseStrategy.ATOMIC
        assert config.targets == []

    def test_duplicate_target_names_rejected(self) -> None:
        with pytest.raises(ValueError, match="duplicate target"):
            ReleaseConfig(
                targets=[
                    {"name": "a", "kind": "memory"},
                    {"name": "a", "kind": "memory"},
                ]
            )


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


class TestLoadReleaseConfig:
    """Reading release configs from YAML and JSON files."""

    def test_yaml_with_camel_case_keys(self, tmp_path: Path) -> None:
        config = load_release_config(_write(tmp_path / "release.yaml", _RELEASE_CONFIG))
        assert config.policies_root == "contrib/policies"
        assert config.strategy is ReleaseStrategy.BEST_EFFORT
        assert config.validation.required_files == {"metadata.json"}
        assert config.validation.max_parallel_jobs == 8
        assert config.recovery.strategy is RecoveryStrategy.HYBRID
        assert config.recovery.max_attempts == 3
        assert [t.kind for t in config.targets] == ["filesystem", "registry"]
        assert config.targets[1].supports_rollback is False
        assert config.backoff.max_seconds == 4

    def test_json_file(self, tmp_path: Path) -> None:
        path = _write(tmp_path / "release.json", json.dumps(_RELEASE_CONFIG))
        assert load_release_config(path).strategy is ReleaseStrategy.BEST_EFFORT

    def test_empty_file_gives_defaults(self, tmp_path: Path) -> None:
        assert load_release_config(_write(tmp_path / "empty.yaml", "")) == ReleaseConfig()

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigLoadError, match="not found"):
            load_release_config(tmp_path / "nope.yaml")

    def test_malformed_yaml(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigLoadError, match="Malformed"):
            load_release_config(_write(tmp_path / "bad.yaml", "strategy: [unclosed"))

    def test_non_mapping_root(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigLoadError, match="Expected a mapping"):
            load_release_config(_write(tmp_path / "list.yaml", "- a\n- b\n"))

    def test_invalid_values_chain_cause(self, tmp_path: Path) -> None:
        path = _write(tmp_path / "bad.yaml", {"strategy": "yolo"})
        with pytest.raises(ConfigLoadError, match="Invalid release config") as excinfo:
            load_release_config(path)
        assert excinfo.value.__cause__ is not None


class TestLoadValidationConfig:
    """Standalone validation rule files."""

    def test_loads_rules(self, tmp_path: Path) -> None:
        path = _write(tmp_path / "rules.yaml", {"requiredDocsFiles": ["docs/README.md", "docs/examples.md"]})
        config = load_validation_config(path)
        assert config.required_docs_files == {"docs/README.md", "docs/examples.md"}

    def test_invalid_rules(self, tmp_path: Path) -> None:
        path = _write(tmp_path / "rules.yaml", {"maxParallelJobs": 0})
        with pytest.raises(ConfigLoadError, match="Invalid validation config"):
            load_validation_config(path)
