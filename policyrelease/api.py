# api.py — FastAPI application exposing the release engine as a REST service.
# Endpoints: POST /validate, POST /releases, GET /releases, GET /releases/{release_id}.

from __future__ import annotations

import logging
from typing import Optional, Sequence

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from policyrelease.config import ReleaseConfig
from policyrelease.engine import ReleaseOrchestrator
from policyrelease.errors import IntegrityError, PolicyReleaseError
from policyrelease.loader import DirectorySnapshotReader, SnapshotReader, compute_content_hash
from policyrelease.models import (
    SEMVER_DIR_PATTERN,
    Candidate,
    PolicyVersionRef,
    ReleasePhase,
    ReleaseReport,
    ReleaseStrategy,
    ValidationResult,
)
from policyrelease.registry import PublishBackend, build_backend
from policyrelease.validator import BuildOracle, CommandBuildOracle, ValidationPipeline

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Request / response bodies
# ---------------------------------------------------------------------------


class ValidateRequest(BaseModel):
    """A policy version submitted inline for validation."""

    name: str = Field(..., min_length=1, examples=["policy-x"])
    version: str = Field(..., pattern=SEMVER_DIR_PATTERN, examples=["v1.0.0"])
    files: dict[str, str] = Field(
        default_factory=dict,
        description="File contents keyed by path relative to the version directory.",
    )


class ReleaseRequest(BaseModel):
    previous_ref: str = Field(..., min_length=1)
    current_ref: str = Field(..., min_length=1)
    release_id: Optional[str] = None
    strategy: Optional[ReleaseStrategy] = None


class ReleaseSummary(BaseModel):
    release_id: str
    strategy: ReleaseStrategy
    phase: ReleasePhase
    candidates: int
    exit_code: int


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(
    config: ReleaseConfig | None = None,
    reader: SnapshotReader | None = None,
    backends: Sequence[PublishBackend] | None = None,
    build_oracle: BuildOracle | None = None,
) -> FastAPI:
    """Build the REST application.

    Args:
        config:       Release configuration; defaults apply when omitted.
        reader:       Snapshot reader used to resolve releases; a
                      :class:`DirectorySnapshotReader` when omitted.
        backends:     Publish backends shared by every release; built from
                      ``config.targets`` when omitted.
        build_oracle: Collaborator for the build check; a
                      :class:`CommandBuildOracle` when omitted and build
                      validation is enabled.
    """
    config = config or ReleaseConfig()
    reader = reader or DirectorySnapshotReader()
    if backends is None:
        backends = [build_backend(target) for target in config.targets]
    backends = list(backends)
    if build_oracle is None and config.validation.enable_go_build_validation:
        build_oracle = CommandBuildOracle()
    pipeline = ValidationPipeline(config.validation, build_oracle=build_oracle)
    releases: dict[str, ReleaseReport] = {}

    app = FastAPI(title="Policy Release API", version="0.1.0")

    @app.post("/validate", response_model=ValidationResult)
    async def validate_policy(request: ValidateRequest) -> ValidationResult:
        """Validate a submitted policy version."""
        files = {path.strip("/"): text.encode("utf-8") for path, text in request.files.items()}
        candidate = Candidate(
            ref=PolicyVersionRef(
                name=request.name,
                version=request.version,
                content_hash=compute_content_hash(files),
            ),
            files=files,
        )
        return pipeline.validate(candidate)

    @app.post("/releases", response_model=ReleaseReport, status_code=201)
    async def create_release(request: ReleaseRequest) -> ReleaseReport:
        """Run a release between two snapshot references and return its report."""
        if request.release_id is not None and request.release_id in releases:
            raise HTTPException(
                status_code=409, detail=f"release {request.release_id} already exists"
            )

        release_config = config
        if request.strategy is not None:
            release_config = config.model_copy(update={"strategy": request.strategy})
        orchestrator = ReleaseOrchestrator.from_config(
            release_config, reader, backends=backends, build_oracle=build_oracle
        )

        try:
            report = await orchestrator.run(
                request.previous_ref, request.current_ref, release_id=request.release_id
            )
        except IntegrityError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except PolicyReleaseError as exc:
            logger.exception("Release %s aborted", request.release_id or "<new>")
            raise HTTPException(status_code=500, detail=str(exc)) from exc

        releases[report.release_id] = report
        return report

    @app.get("/releases", response_model=list[ReleaseSummary])
    async def list_releases() -> list[ReleaseSummary]:
        """Return a summary of every release run by this service."""
        return [
            ReleaseSummary(
                release_id=report.release_id,
                strategy=report.strategy,
                phase=report.phase,
                candidates=len(report.candidates),
                exit_code=report.exit_code(),
            )
            for report in releases.values()
        ]

    @app.get("/releases/{release_id}", response_model=ReleaseReport)
    async def get_release(release_id: str) -> ReleaseReport:
        """Return the full report of one release."""
        report = releases.get(release_id)
        if report is None:
            raise HTTPException(status_code=404, detail=f"release {release_id} not found")
        return report

    return app


app = create_app()
