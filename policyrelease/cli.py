# cli.py — Typer-based command-line interface for policyrelease.
# Provides commands: validate, resolve, release.

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from policyrelease.config import ReleaseConfig, load_release_config
from policyrelease.engine import ReleaseOrchestrator
from policyrelease.errors import PolicyReleaseError
from policyrelease.loader import (
    DirectorySnapshotReader,
    GitSnapshotReader,
    SnapshotReader,
    compute_content_hash,
    read_directory_files,
)
from policyrelease.models import (
    Candidate,
    PolicyVersionRef,
    RecoveryReport,
    ReleasePhase,
    ReleaseReport,
    ReleaseStrategy,
    VerdictStatus,
    is_semver_dir,
)
from policyrelease.resolver import VersionSetResolver
from policyrelease.validator import CommandBuildOracle, ValidationPipeline

__version__ = "0.1.0"

app = typer.Typer(
    name="policyrelease",
    help="Policy release orchestration — validate, resolve, and publish policy versions.",
    no_args_is_help=True,
)

console = Console()
err_console = Console(stderr=True)

_STATUS_STYLES = {
    VerdictStatus.PUBLISHED: "green",
    VerdictStatus.ALREADY_PUBLISHED: "cyan",
    VerdictStatus.FAILED: "red",
    VerdictStatus.SKIPPED: "yellow",
    VerdictStatus.ROLLED_BACK: "magenta",
    VerdictStatus.ROLLBACK_FAILED: "bold red",
}

_PHASE_STYLES = {
    ReleasePhase.SUCCEEDED: "bold green",
    ReleasePhase.FAILED: "bold red",
    ReleasePhase.PARTIALLY_SUCCEEDED: "bold yellow",
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _version_callback(value: bool) -> None:
    """Print version and exit when ``--version`` is passed."""
    if value:
        console.print(f"policyrelease {__version__}")
        raise typer.Exit()


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


def _load_config(config_path: Optional[Path]) -> ReleaseConfig:
    if config_path is None:
        return ReleaseConfig()
    try:
        return load_release_config(config_path)
    except PolicyReleaseError as exc:
        err_console.print(f"[red]Error:[/red] {escape(str(exc))}")
        raise typer.Exit(code=1)


def _reader(git_repo: Optional[Path]) -> SnapshotReader:
    if git_repo is not None:
        return GitSnapshotReader(git_repo)
    return DirectorySnapshotReader()


def _build_oracle(config: ReleaseConfig) -> CommandBuildOracle | None:
    if config.validation.enable_go_build_validation:
        return CommandBuildOracle()
    return None


def _print_recovery(recovery: RecoveryReport) -> None:
    buckets = [
        ("Rolled back", "magenta", recovery.rolled_back),
        ("Needs manual retry", "yellow", recovery.needs_manual_retry),
        ("Manual rollback required", "yellow", recovery.manual_rollback_required),
        ("ROLLBACK FAILED", "bold red", recovery.rollback_failures),
    ]
    for title, style, items in buckets:
        if not items:
            continue
        console.print(f"\n[{style}]{title}:[/{style}]")
        for item in items:
            target = f" @ {item.target}" if item.target else ""
            console.print(f"  {item.policy}{target} — {escape(item.reason)}")
    for note in recovery.notes:
        console.print(f"  [dim]{note}[/dim]")


def _print_report(report: ReleaseReport) -> None:
    failed_validation = [v for v in report.validation if not v.passed]
    for result in failed_validation:
        console.print(f"[red]✗ INVALID:[/red] {result.ref.key}")
        for check in result.failed_checks:
            if check.required:
                console.print(f"  {check.check_name}: {escape(check.message)}")

    if report.publish:
        table = Table(title=f"Release {report.release_id} ({report.strategy.value})")
        table.add_column("Policy", style="cyan", no_wrap=True)
        table.add_column("Target")
        table.add_column("Status")
        table.add_column("Attempts", justify="right")
        table.add_column("Detail")
        for verdict in report.publish:
            style = _STATUS_STYLES[verdict.status]
            table.add_row(
                verdict.ref.key,
                verdict.target,
                f"[{style}]{verdict.status.value}[/{style}]",
                str(verdict.attempts),
                escape(verdict.error or ""),
            )
        console.print(table)

    if report.recovery is not None:
        _print_recovery(report.recovery)

    if report.error:
        err_console.print(f"[red]Error:[/red] {escape(report.error)}")

    style = _PHASE_STYLES.get(report.phase, "bold")
    console.print(f"\n[{style}]Status: {report.phase.value}[/{style}]")
    console.print(f"Candidates: {len(report.candidates)}")


# ---------------------------------------------------------------------------
# Global options
# ---------------------------------------------------------------------------


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-v",
        help="Show the policyrelease version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        help="Log debug output to stderr.",
    ),
) -> None:
    """Policy release orchestration CLI."""
    _configure_logging(verbose)


# ---------------------------------------------------------------------------
# validate
# ---------------------------------------------------------------------------


@app.command()
def validate(
    version_dir: Path = typer.Argument(
        ...,
        help="Path to a policy version directory (<name>/<vX.Y.Z>).",
    ),
    config_path: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Release config file (YAML or JSON)."
    ),
) -> None:
    """Run the validation pipeline over a single policy version directory.

    Exit code is 0 when the version passes, 1 otherwise.
    """
    if not version_dir.is_dir():
        err_console.print(f"[red]Error:[/red] directory not found: {version_dir}")
        raise typer.Exit(code=1)

    resolved = version_dir.resolve()
    if not is_semver_dir(resolved.name):
        err_console.print(
            f"[red]Error:[/red] {resolved.name!r} is not a vMAJOR.MINOR.PATCH directory"
        )
        raise typer.Exit(code=1)

    config = _load_config(config_path)
    try:
        files = read_directory_files(resolved)
        candidate = Candidate(
            ref=PolicyVersionRef(
                name=resolved.parent.name,
                version=resolved.name,
                content_hash=compute_content_hash(files),
            ),
            files=files,
        )
        pipeline = ValidationPipeline(config.validation, build_oracle=_build_oracle(config))
        result = pipeline.validate(candidate)
    except PolicyReleaseError as exc:
        err_console.print(f"[red]Error:[/red] {escape(str(exc))}")
        raise typer.Exit(code=1)

    for check in result.checks:
        if check.passed:
            console.print(f"  [green]✓[/green] {check.check_name}: {escape(check.message)}")
        elif check.required:
            console.print(f"  [red]✗[/red] {check.check_name}: {escape(check.message)}")
        else:
            console.print(f"  [yellow]⚠[/yellow] {check.check_name}: {escape(check.message)}")

    if result.passed:
        console.print(f"[green]✓ VALID:[/green] {candidate.ref.key}")
        raise typer.Exit(code=0)
    console.print(f"[red]✗ INVALID:[/red] {candidate.ref.key}")
    raise typer.Exit(code=1)


# ---------------------------------------------------------------------------
# resolve
# ---------------------------------------------------------------------------


@app.command()
def resolve(
    previous_ref: str = typer.Argument(..., help="Snapshot of the last published release."),
    current_ref: str = typer.Argument(..., help="Snapshot proposed for release."),
    config_path: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Release config file (YAML or JSON)."
    ),
    git_repo: Optional[Path] = typer.Option(
        None, "--git-repo", help="Treat refs as revisions of this git repository."
    ),
) -> None:
    """List the policy versions that are new or changed between two snapshots."""
    config = _load_config(config_path)
    try:
        refs = VersionSetResolver(_reader(git_repo), config.policies_root).resolve(
            previous_ref, current_ref
        )
    except PolicyReleaseError as exc:
        err_console.print(f"[red]Error:[/red] {escape(str(exc))}")
        raise typer.Exit(code=1)

    if not refs:
        console.print("[yellow]No new policy versions.[/yellow]")
        raise typer.Exit(code=0)

    table = Table(title="Release candidates")
    table.add_column("Policy", style="cyan", no_wrap=True)
    table.add_column("Version")
    table.add_column("Content hash")
    for ref in refs:
        table.add_row(ref.name, ref.version, ref.content_hash[:12])

    console.print(table)
    console.print(f"\nTotal: {len(refs)} candidate(s)")


# ---------------------------------------------------------------------------
# release
# ---------------------------------------------------------------------------


@app.command()
def release(
    previous_ref: str = typer.Argument(..., help="Snapshot of the last published release."),
    current_ref: str = typer.Argument(..., help="Snapshot proposed for release."),
    config_path: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Release config file (YAML or JSON)."
    ),
    git_repo: Optional[Path] = typer.Option(
        None, "--git-repo", help="Treat refs as revisions of this git repository."
    ),
    release_id: Optional[str] = typer.Option(
        None, "--release-id", help="Identifier for this release run."
    ),
    strategy: Optional[ReleaseStrategy] = typer.Option(
        None, "--strategy", help="Override the configured release strategy."
    ),
    report_json: Optional[Path] = typer.Option(
        None, "--report-json", help="Write the full release report as JSON to this file."
    ),
) -> None:
    """Resolve, validate, and publish the policy versions between two snapshots.

    Exit code is 0 for succeeded, 1 for failed, 2 for partially succeeded.
    """
    config = _load_config(config_path)
    if strategy is not None:
        config = config.model_copy(update={"strategy": strategy})
    if not config.targets:
        err_console.print("[yellow]Warning:[/yellow] no publish targets configured")

    try:
        orchestrator = ReleaseOrchestrator.from_config(
            config, _reader(git_repo), build_oracle=_build_oracle(config)
        )
        report = orchestrator.execute(previous_ref, current_ref, release_id=release_id)
    except PolicyReleaseError as exc:
        err_console.print(f"[red]Error:[/red] {escape(str(exc))}")
        raise typer.Exit(code=1)

    _print_report(report)

    if report_json is not None:
        report_json.parent.mkdir(parents=True, exist_ok=True)
        report_json.write_text(report.model_dump_json(indent=2), encoding="utf-8")
        console.print(f"Report written to {report_json}")

    raise typer.Exit(code=report.exit_code())


if __name__ == "__main__":
    app()
