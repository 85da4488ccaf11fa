"""
Release Demo — Contributor Policy Release Scenarios

This script runs the release engine against in-memory snapshots and
in-memory publish targets, showing how each release strategy reacts
to validation and publish failures.

Usage:
    python run_release.py --scenario clean
    python run_release.py --scenario invalid
    python run_release.py --scenario flaky
    python run_release.py --scenario partial
"""

import argparse
import json

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from policyrelease.config import BackoffSettings
from policyrelease.engine import ReleaseOrchestrator
from policyrelease.errors import RetryablePublishError, TerminalPublishError
from policyrelease.loader import InMemorySnapshotReader
from policyrelease.models import (
    PublishTarget,
    RecoveryPolicy,
    ReleaseStrategy,
    ValidationConfig,
)
from policyrelease.registry import InMemoryBackend
from policyrelease.resolver import VersionSetResolver
from policyrelease.validator import ValidationPipeline

console = Console()

SCENARIOS = {
    "clean": {
        "description": "Two new versions, healthy targets, atomic release",
        "strategy": ReleaseStrategy.ATOMIC,
    },
    "invalid": {
        "description": "policy-y is missing docs/examples.md, atomic release publishes nothing",
        "strategy": ReleaseStrategy.ATOMIC,
    },
    "flaky": {
        "description": "Registry times out twice before accepting policy-y",
        "strategy": ReleaseStrategy.ATOMIC,
    },
    "partial": {
        "description": "Registry denies policy-y, best-effort release keeps policy-x",
        "strategy": ReleaseStrategy.BEST_EFFORT,
    },
}

STATUS_COLORS = {
    "published": "green",
    "already_published": "cyan",
    "failed": "red",
    "skipped": "yellow",
    "rolled_back": "magenta",
    "rollback_failed": "bold red",
}


def version_files(name, version, docs=("docs/README.md", "docs/examples.md")):
    base = f"policies/{name}/{version}"
    metadata = {
        "name": name,
        "version": version,
        "description": f"{name} contributed policy",
        "author": "community",
        "tags": ["demo"],
    }
    files = {
        f"{base}/metadata.json": json.dumps(metadata).encode(),
        f"{base}/policy-definition.yaml": b"rules:\n  - effect: deny\n    match: '*'\n",
    }
    for doc in docs:
        files[f"{base}/{doc}"] = f"# {name} {version}\n".encode()
    return files


def build_snapshots(scenario):
    previous = version_files("policy-x", "v1.0.0")
    y_docs = ("docs/README.md",) if scenario == "invalid" else ("docs/README.md", "docs/examples.md")
    current = {
        **previous,
        **version_files("policy-x", "v1.1.0"),
        **version_files("policy-y", "v1.0.0", docs=y_docs),
    }
    return InMemorySnapshotReader({"release-1": previous, "release-2": current})


class DemoRegistry(InMemoryBackend):
    """In-memory registry that misbehaves for policy-y, depending on the scenario."""

    def __init__(self, target, scenario):
        super().__init__(target)
        self.scenario = scenario
        self.timeouts_left = 2

    async def upload(self, candidate, artifact):
        if candidate.ref.name == "policy-y":
            if self.scenario == "flaky" and self.timeouts_left:
                self.timeouts_left -= 1
                raise RetryablePublishError("registry request timed out")
            if self.scenario == "partial":
                raise TerminalPublishError("HTTP 403: contributor not allowed to publish")
        await super().upload(candidate, artifact)


def run_scenario(scenario):
    info = SCENARIOS[scenario]
    console.print(Panel(info["description"], title=f"Scenario: {scenario}", box=box.ROUNDED))

    store = InMemoryBackend(PublishTarget(name="artifact-store"))
    registry = DemoRegistry(PublishTarget(name="policy-registry"), scenario)
    orchestrator = ReleaseOrchestrator(
        VersionSetResolver(build_snapshots(scenario)),
        ValidationPipeline(
            ValidationConfig(required_docs_files={"docs/README.md", "docs/examples.md"})
        ),
        [store, registry],
        strategy=info["strategy"],
        recovery_policy=RecoveryPolicy(max_retry_attempts=3),
        backoff=BackoffSettings(base_seconds=0.1, max_seconds=1),
    )
    report = orchestrator.execute("release-1", "release-2", release_id=f"demo-{scenario}")

    for result in report.validation:
        mark = "[green]✓[/green]" if result.passed else "[red]✗[/red]"
        console.print(f"{mark} {result.ref.key}")
        for check in result.failed_checks:
            console.print(f"    {check.check_name}: {check.message}")

    if report.publish:
        table = Table(title="Publish verdicts", box=box.SIMPLE_HEAVY)
        table.add_column("Policy", style="cyan")
        table.add_column("Target")
        table.add_column("Status")
        table.add_column("Attempts", justify="right")
        for verdict in report.publish:
            color = STATUS_COLORS[verdict.status.value]
            table.add_row(
                verdict.ref.key,
                verdict.target,
                f"[{color}]{verdict.status.value}[/{color}]",
                str(verdict.attempts),
            )
        console.print(table)

    if report.recovery and report.recovery.requires_manual_intervention:
        console.print("[yellow]Manual follow-up:[/yellow]")
        for item in report.recovery.needs_manual_retry + report.recovery.manual_rollback_required:
            console.print(f"  {item.policy} @ {item.target}: {item.reason}")

    console.print(f"\n[bold]Final phase:[/bold] {report.phase.value} (exit code {report.exit_code()})\n")
    return report.exit_code()


def main():
    parser = argparse.ArgumentParser(description="Policy release engine demo")
    parser.add_argument("--scenario", choices=sorted(SCENARIOS), default="clean")
    args = parser.parse_args()
    raise SystemExit(run_scenario(args.scenario))


if __name__ == "__main__":
    main()
