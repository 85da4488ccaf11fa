# test_validator.py — Tests for the declarative validation pipeline.

from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest

from policyrelease.errors import BuildOracleError
from policyrelease.models import Candidate, PolicyVersionRef, ValidationConfig, ValidationStatus
from policyrelease.validator import (
    DEFAULT_CHECKS,
    BuildVerdict,
    CommandBuildOracle,
    ValidationPipeline,
)

# ---------------------------------------------------------------------------
# Shared test data
# ---------------------------------------------------------------------------

_BASE_METADATA: dict = {
    "name": "policy-x",
    "version": "v1.0.0",
    "description": "Denies everything by default",
    "author": "contributor",
    "tags": ["security"],
}


def _files(metadata: dict | None = None, drop: tuple[str, ...] = ()) -> dict[str, bytes]:
    """A complete, valid version tree with optional removals."""
    files = {
        "metadata.json": json.dumps({**_BASE_METADATA, **(metadata or {})}).encode(),
        "policy-definition.yaml": b"rules:\n  - deny: all\n",
        "docs/README.md": b"# policy-x\n",
    }
    for path in drop:
        files.pop(path, None)
    return files


def _candidate(files: dict[str, bytes], name: str = "policy-x", version: str = "v1.0.0") -> Candidate:
    return Candidate(
        ref=PolicyVersionRef(name=name, version=version, content_hash="h"),
        files=files,
    )


def _check(result, name: str):
    return next(c for c in result.checks if c.check_name == name)


# ---------------------------------------------------------------------------
# Happy path and ordering
# ---------------------------------------------------------------------------


class TestValidationPipeline:
    """End-to-end behaviour of the default pipeline."""

    def test_valid_candidate_passes(self) -> None:
        result = ValidationPipeline().validate(_candidate(_files()))
        assert result.status is ValidationStatus.PASSED
        assert result.warnings == []

    def test_check_results_follow_declaration_order(self) -> None:
        pipeline = ValidationPipeline()
        result = pipeline.validate(_candidate(_files()))
        assert [c.check_name for c in result.checks] == pipeline.check_names
        assert pipeline.check_names == [
            "required_files",
            "required_dirs",
            "metadata_fields",
            "metadata_identity",
            "policy_definition",
            "documentation",
        ]

    def test_build_check_only_when_enabled(self) -> None:
        pipeline = ValidationPipeline(ValidationConfig(enable_go_build_validation=True))
        assert pipeline.check_names[-1] == "build"
        assert len(pipeline.check_names) == len(DEFAULT_CHECKS)


# ---------------------------------------------------------------------------
# Structural checks
# ---------------------------------------------------------------------------


class TestStructuralChecks:
    """Required files and directories, with early exit."""

    def test_missing_required_file_names_the_file(self) -> None:
        result = ValidationPipeline().validate(_candidate(_files(drop=("metadata.json",))))
        assert result.status is ValidationStatus.FAILED
        check = _check(result, "required_files")
        assert not check.passed
        assert "metadata.json" in check.message

    def test_structural_failure_short_circuits(self) -> None:
        """Later checks are not run once structure is broken."""
        result = ValidationPipeline().validate(
            _candidate(_files(drop=("metadata.json", "docs/README.md")))
        )
        assert [c.check_name for c in result.checks] == ["required_files", "required_dirs"]

    def test_missing_required_file_fails_even_in_permissive_mode(self) -> None:
        config = ValidationConfig(strict_validation=False)
        result = ValidationPipeline(config).validate(
            _candidate(_files(drop=("policy-definition.yaml",)))
        )
        assert result.status is ValidationStatus.FAILED

    def test_missing_required_dir(self) -> None:
        result = ValidationPipeline().validate(_candidate(_files(drop=("docs/README.md",))))
        check = _check(result, "required_dirs")
        assert not check.passed
        assert "docs" in check.message


# ---------------------------------------------------------------------------
# Metadata checks
# ---------------------------------------------------------------------------


class TestMetadataChecks:
    """Required metadata keys, primitive types, and identity."""

    def test_missing_field(self) -> None:
        files = _files()
        metadata = dict(_BASE_METADATA)
        del metadata["author"]
        files["metadata.json"] = json.dumps(metadata).encode()
        result = ValidationPipeline().validate(_candidate(files))
        assert "'author' is missing" in _check(result, "metadata_fields").message

    def test_wrong_primitive_type(self) -> None:
        result = ValidationPipeline().validate(_candidate(_files({"description": 42})))
        check = _check(result, "metadata_fields")
        assert not check.passed
        assert "must be string" in check.message

    def test_unknown_extra_fields_ignored(self) -> None:
        result = ValidationPipeline().validate(_candidate(_files({"homepage": "x", "stars": 3})))
        assert result.passed

    def test_malformed_json_fails(self) -> None:
        files = _files()
        files["metadata.json"] = b"{broken"
        result = ValidationPipeline().validate(_candidate(files))
        assert "malformed JSON" in _check(result, "metadata_fields").message

    def test_name_mismatch(self) -> None:
        result = ValidationPipeline().validate(_candidate(_files({"name": "policy-y"})))
        check = _check(result, "metadata_identity")
        assert not check.passed
        assert "policy-y" in check.message

    def test_version_without_v_prefix_matches(self) -> None:
        result = ValidationPipeline().validate(_candidate(_files({"version": "1.0.0"})))
        assert _check(result, "metadata_identity").passed


# ---------------------------------------------------------------------------
# Policy definition and documentation
# ---------------------------------------------------------------------------


class TestDefinitionAndDocs:
    """Schema and documentation checks."""

    def test_empty_definition_fails_default_schema(self) -> None:
        files = _files()
        files["policy-definition.yaml"] = b"{}\n"
        result = ValidationPipeline().validate(_candidate(files))
        assert not _check(result, "policy_definition").passed

    def test_custom_schema_from_file(self, tmp_path: Path) -> None:
        schema = {
            "$schema": "https://json-schema.org/draft/2020-12/schema",
            "type": "object",
            "required": ["effect"],
        }
        schema_path = tmp_path / "schema.json"
        schema_path.write_text(json.dumps(schema), encoding="utf-8")
        pipeline = ValidationPipeline(ValidationConfig(policy_schema_path=str(schema_path)))
        result = pipeline.validate(_candidate(_files()))
        check = _check(result, "policy_definition")
        assert not check.passed
        assert "effect" in check.message

    def test_missing_doc_file(self) -> None:
        config = ValidationConfig(required_docs_files={"docs/README.md", "docs/examples.md"})
        result = ValidationPipeline(config).validate(_candidate(_files()))
        check = _check(result, "documentation")
        assert not check.passed
        assert "docs/examples.md" in check.message

    def test_empty_doc_file(self) -> None:
        files = _files()
        files["docs/README.md"] = b""
        result = ValidationPipeline().validate(_candidate(files))
        assert "empty doc file" in _check(result, "documentation").message


# ---------------------------------------------------------------------------
# Strict vs permissive
# ---------------------------------------------------------------------------


class TestPermissiveMode:
    """Non-structural failures become warnings when strict validation is off."""

    def test_failure_downgraded_to_warning(self) -> None:
        config = ValidationConfig(strict_validation=False)
        result = ValidationPipeline(config).validate(_candidate(_files({"description": 42})))
        assert result.status is ValidationStatus.PASSED
        assert len(result.warnings) == 1
        assert result.warnings[0].startswith("metadata_fields:")
        check = _check(result, "metadata_fields")
        assert not check.passed
        assert not check.required

    def test_strict_failure_blocks(self) -> None:
        result = ValidationPipeline().validate(_candidate(_files({"description": 42})))
        assert result.status is ValidationStatus.FAILED
        assert _check(result, "metadata_fields").required


# ---------------------------------------------------------------------------
# Build oracle
# ---------------------------------------------------------------------------


class TestBuildCheck:
    """The build check trusts the oracle's verdict."""

    _CONFIG = ValidationConfig(enable_go_build_validation=True)

    def test_oracle_pass(self) -> None:
        pipeline = ValidationPipeline(self._CONFIG, build_oracle=lambda c: BuildVerdict(True, "ok"))
        assert pipeline.validate(_candidate(_files())).passed

    def test_oracle_fail(self) -> None:
        pipeline = ValidationPipeline(
            self._CONFIG, build_oracle=lambda c: BuildVerdict(False, "undefined: Foo")
        )
        result = pipeline.validate(_candidate(_files()))
        assert result.status is ValidationStatus.FAILED
        assert _check(result, "build").message == "undefined: Foo"

    def test_missing_oracle_fails(self) -> None:
        result = ValidationPipeline(self._CONFIG).validate(_candidate(_files()))
        assert "no build oracle" in _check(result, "build").message

    def test_oracle_error_fails_check(self) -> None:
        def _broken(candidate: Candidate) -> BuildVerdict:
            raise BuildOracleError("toolchain missing")

        result = ValidationPipeline(self._CONFIG, build_oracle=_broken).validate(_candidate(_files()))
        assert _check(result, "build").message == "toolchain missing"


class TestCommandBuildOracle:
    """Running a build command in a materialised tree."""

    def test_success_exit_code(self) -> None:
        oracle = CommandBuildOracle([sys.executable, "-c", "import os; assert os.path.exists('metadata.json')"])
        verdict = oracle(_candidate(_files()))
        assert verdict.passed

    def test_failure_exit_code_reports_output(self) -> None:
        oracle = CommandBuildOracle([sys.executable, "-c", "import sys; sys.exit('compile error')"])
        verdict = oracle(_candidate(_files()))
        assert not verdict.passed
        assert "compile error" in verdict.message

    def test_missing_command_raises(self) -> None:
        oracle = CommandBuildOracle(["definitely-not-a-real-build-tool-xyz"])
        with pytest.raises(BuildOracleError, match="not found"):
            oracle(_candidate(_files()))
