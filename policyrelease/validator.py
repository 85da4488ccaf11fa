# validator.py — Declarative validation pipeline for policy version candidates.
# Structural checks run first with early exit, then metadata, definition schema,
# documentation, and the optional build check delegated to a build oracle.

from __future__ import annotations

import json
import logging
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Protocol, Sequence

from jsonschema import Draft202012Validator

from policyrelease.errors import BuildOracleError
from policyrelease.loader import DocumentParseError, load_metadata, load_policy_definition
from policyrelease.models import (
    Candidate,
    CheckResult,
    ValidationConfig,
    ValidationResult,
    ValidationStatus,
)

logger = logging.getLogger(__name__)

# A policy definition must at least be a non-empty mapping; stricter schemas
# are supplied through ValidationConfig.policy_schema_path.
DEFAULT_POLICY_DEFINITION_SCHEMA: dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "minProperties": 1,
}

_PRIMITIVE_CHECKS: dict[str, Callable[[Any], bool]] = {
    "string": lambda v: isinstance(v, str),
    "integer": lambda v: isinstance(v, int) and not isinstance(v, bool),
    "number": lambda v: isinstance(v, (int, float)) and not isinstance(v, bool),
    "boolean": lambda v: isinstance(v, bool),
    "array": lambda v: isinstance(v, list),
    "object": lambda v: isinstance(v, dict),
}


# ---------------------------------------------------------------------------
# Build oracle
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BuildVerdict:
    """Pass/fail answer from a build oracle, trusted as given."""

    passed: bool
    message: str = ""


class BuildOracle(Protocol):
    """Compiles a candidate's implementation; the engine never compiles itself."""

    def __call__(self, candidate: Candidate) -> BuildVerdict: ...


class CommandBuildOracle:
    """Build oracle that runs a command inside a copy of the candidate tree.

    The candidate's files are written to a temporary directory and *command*
    runs there.  Exit code 0 passes.

    Args:
        command: Argument vector to execute, ``go build ./...`` by default.
        timeout: Seconds before the build is considered failed.
    """

    def __init__(
        self,
        command: Sequence[str] = ("go", "build", "./..."),
        *,
        timeout: float = 600.0,
    ) -> None:
        self._command = list(command)
        self._timeout = timeout

    def __call__(self, candidate: Candidate) -> BuildVerdict:
        with tempfile.TemporaryDirectory(prefix="policyrelease-build-") as workdir:
            root = Path(workdir)
            for relative, data in candidate.files.items():
                target = root / relative
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_bytes(data)

            try:
                proc = subprocess.run(
                    self._command,
                    cwd=root,
                    capture_output=True,
                    text=True,
                    timeout=self._timeout,
                    check=False,
                )
            except FileNotFoundError as exc:
                raise BuildOracleError(f"build command not found: {self._command[0]}") from exc
            except OSError as exc:
                raise BuildOracleError(f"cannot run build command {self._command[0]}: {exc}") from exc
            except subprocess.TimeoutExpired:
                return BuildVerdict(False, f"build timed out after {self._timeout:g}s")

        if proc.returncode == 0:
            return BuildVerdict(True, "build succeeded")
        output = (proc.stderr or proc.stdout).strip()
        return BuildVerdict(False, f"build failed (exit {proc.returncode}): {output}")


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _load_json_schema(schema_path: Path) -> dict:
    """Read and parse a JSON Schema file from disk.

    Raises:
        FileNotFoundError: If the schema file does not exist.
    """
    if not schema_path.exists():
        raise FileNotFoundError(f"Schema file not found: {schema_path}")
    return json.loads(schema_path.read_text(encoding="utf-8"))


def _format_jsonschema_error(error) -> str:
    """Turn a ``jsonschema.ValidationError`` into a one-line human message.

    Returns:
        A string like ``"$.field: 'x' is not valid under ..."``
    """
    path = "$." + ".".join(str(p) for p in error.absolute_path) if error.absolute_path else "$"
    return f"{path}: {error.message}"


def _strip_v(version: str) -> str:
    return version[1:] if version.startswith("v") else version


# ---------------------------------------------------------------------------
# Checks
# ---------------------------------------------------------------------------

CheckOutcome = tuple[bool, str]


@dataclass(frozen=True)
class Check:
    """One declarative pipeline step.

    Attributes:
        name:       Name reported in :class:`CheckResult`.
        run:        Pure function of the candidate and its context.
        structural: Structural failures short-circuit the rest of the pipeline
                    and always block the candidate.
        enabled:    Predicate deciding whether the check runs for a config.
    """

    name: str
    run: Callable[[Candidate, "CheckContext"], CheckOutcome]
    structural: bool = False
    enabled: Callable[[ValidationConfig], bool] = lambda config: True


@dataclass(frozen=True)
class CheckContext:
    config: ValidationConfig
    definition_schema: dict
    build_oracle: BuildOracle | None


def check_required_files(candidate: Candidate, ctx: CheckContext) -> CheckOutcome:
    missing = sorted(f for f in ctx.config.required_files if f.strip("/") not in candidate.files)
    if missing:
        return False, f"missing required file(s): {', '.join(missing)}"
    return True, "all required files present"


def check_required_dirs(candidate: Candidate, ctx: CheckContext) -> CheckOutcome:
    missing = sorted(d for d in ctx.config.required_dirs if not candidate.has_dir(d))
    if missing:
        return False, f"missing required directory(ies): {', '.join(missing)}"
    return True, "all required directories present"


def check_metadata_fields(candidate: Candidate, ctx: CheckContext) -> CheckOutcome:
    try:
        metadata = load_metadata(candidate.files, ctx.config.metadata_file)
    except DocumentParseError as exc:
        return False, str(exc)

    problems: list[str] = []
    for field_name in sorted(ctx.config.required_metadata_fields):
        if metadata.get(field_name) is None:
            problems.append(f"'{field_name}' is missing")
            continue
        expected = ctx.config.metadata_field_types.get(field_name)
        if expected and not _PRIMITIVE_CHECKS[expected](metadata[field_name]):
            actual = type(metadata[field_name]).__name__
            problems.append(f"'{field_name}' must be {expected}, got {actual}")

    if problems:
        return False, f"{ctx.config.metadata_file}: " + "; ".join(problems)
    return True, "required metadata fields present"


def check_metadata_identity(candidate: Candidate, ctx: CheckContext) -> CheckOutcome:
    try:
        metadata = load_metadata(candidate.files, ctx.config.metadata_file)
    except DocumentParseError:
        # Reported by metadata_fields.
        return True, "metadata unavailable; skipped"

    ref = candidate.ref
    problems: list[str] = []
    name = metadata.get("name")
    if isinstance(name, str) and name != ref.name:
        problems.append(f"name '{name}' does not match directory '{ref.name}'")
    version = metadata.get("version")
    if isinstance(version, str) and _strip_v(version) != _strip_v(ref.version):
        problems.append(f"version '{version}' does not match directory '{ref.version}'")

    if problems:
        return False, f"{ctx.config.metadata_file}: " + "; ".join(problems)
    return True, "metadata matches directory"


def check_policy_definition(candidate: Candidate, ctx: CheckContext) -> CheckOutcome:
    filename = ctx.config.policy_definition_file
    if filename not in candidate.files:
        return True, f"{filename} not present; skipped"
    try:
        definition = load_policy_definition(candidate.files, filename)
    except DocumentParseError as exc:
        return False, str(exc)

    validator = Draft202012Validator(ctx.definition_schema)
    errors = [
        _format_jsonschema_error(error)
        for error in sorted(validator.iter_errors(definition), key=lambda e: list(e.absolute_path))
    ]
    if errors:
        return False, f"{filename}: " + "; ".join(errors)
    return True, f"{filename} conforms to schema"


def check_documentation(candidate: Candidate, ctx: CheckContext) -> CheckOutcome:
    missing: list[str] = []
    empty: list[str] = []
    for doc in sorted(ctx.config.required_docs_files):
        data = candidate.files.get(doc.strip("/"))
        if data is None:
            missing.append(doc)
        elif len(data) == 0:
            empty.append(doc)

    problems = []
    if missing:
        problems.append(f"missing doc file(s): {', '.join(missing)}")
    if empty:
        problems.append(f"empty doc file(s): {', '.join(empty)}")
    if problems:
        return False, "; ".join(problems)
    return True, "documentation complete"


def check_build(candidate: Candidate, ctx: CheckContext) -> CheckOutcome:
    if ctx.build_oracle is None:
        return False, "build validation enabled but no build oracle is configured"
    try:
        verdict = ctx.build_oracle(candidate)
    except BuildOracleError as exc:
        return False, str(exc)
    except Exception as exc:
        logger.exception("Build oracle raised for %s", candidate.ref.key)
        return False, f"build oracle raised {exc!r}"
    return verdict.passed, verdict.message


DEFAULT_CHECKS: tuple[Check, ...] = (
    Check("required_files", check_required_files, structural=True),
    Check("required_dirs", check_required_dirs, structural=True),
    Check("metadata_fields", check_metadata_fields),
    Check("metadata_identity", check_metadata_identity),
    Check("policy_definition", check_policy_definition),
    Check("documentation", check_documentation),
    Check("build", check_build, enabled=lambda config: config.enable_go_build_validation),
)


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class ValidationPipeline:
    """Runs the declared checks against a candidate in fixed order.

    Args:
        config:       Active validation rules.
        checks:       Ordered check declarations; :data:`DEFAULT_CHECKS` by
                      default.
        build_oracle: Collaborator consulted by the ``build`` check.
    """

    def __init__(
        self,
        config: ValidationConfig | None = None,
        *,
        checks: Sequence[Check] = DEFAULT_CHECKS,
        build_oracle: BuildOracle | None = None,
    ) -> None:
        self.config = config or ValidationConfig()
        self._checks = tuple(checks)
        schema = (
            _load_json_schema(Path(self.config.policy_schema_path))
            if self.config.policy_schema_path
            else DEFAULT_POLICY_DEFINITION_SCHEMA
        )
        Draft202012Validator.check_schema(schema)
        self._context = CheckContext(
            config=self.config,
            definition_schema=schema,
            build_oracle=build_oracle,
        )

    @property
    def check_names(self) -> list[str]:
        return [c.name for c in self._checks if c.enabled(self.config)]

    def validate(self, candidate: Candidate) -> ValidationResult:
        """Validate one candidate.

        Structural checks run first; if any fails, later checks are skipped.
        Under strict validation every failure blocks the candidate; otherwise
        only structural failures block and the rest become warnings.  A check
        that raises is recorded as a blocking failure under its own name.
        """
        results: list[CheckResult] = []
        structural_failed = False

        for check in self._checks:
            if not check.enabled(self.config):
                continue
            if structural_failed and not check.structural:
                break

            try:
                passed, message = check.run(candidate, self._context)
                required = check.structural or self.config.strict_validation
            except Exception as exc:
                logger.exception("Check %s raised for %s", check.name, candidate.ref.key)
                passed, message, required = False, f"check raised {exc!r}", True
            results.append(
                CheckResult(
                    check_name=check.name,
                    passed=passed,
                    message=message,
                    required=required,
                )
            )
            if not passed and check.structural:
                structural_failed = True

        blocked = any(not r.passed and r.required for r in results)
        warnings = [f"{r.check_name}: {r.message}" for r in results if not r.passed and not r.required]
        status = ValidationStatus.FAILED if blocked else ValidationStatus.PASSED

        if blocked:
            logger.info(
                "%s failed validation: %s",
                candidate.ref.key,
                ", ".join(r.check_name for r in results if not r.passed and r.required),
            )
        for warning in warnings:
            logger.warning("%s: %s", candidate.ref.key, warning)

        return ValidationResult(
            ref=candidate.ref,
            status=status,
            checks=results,
            warnings=warnings,
        )
