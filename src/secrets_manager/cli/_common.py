"""Shared utilities for all CLI command modules.

Provides the Rich console instance, passphrase acquisition, config and
profile loading, and the report renderers used by every command.
"""

from __future__ import annotations

import logging
import os
import signal
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .. import PASSPHRASE_ENV
from ..cipher import Passphrase
from ..config import detect_profile, find_config_file, load_config
from ..engine import TransferEngine
from ..errors import ConfigError
from ..models import (
    OperationResult,
    OperationStatus,
    RunReport,
    SecretsConfig,
    TransferPolicy,
    VerifyReport,
)

console = Console()
logger = logging.getLogger("secrets_manager.cli")


@dataclass
class CliState:
    """Global options shared by every command."""

    profile: Optional[str] = None
    config_path: Optional[Path] = None

    def load_config(self) -> tuple[Path, SecretsConfig]:
        path = find_config_file(self.config_path)
        return path, load_config(path)

    def resolve_profile(self) -> str:
        return detect_profile(self.profile)


def fail(message: str) -> None:
    """Print an error and exit non-zero."""
    console.print(f"[bold red]Error:[/] {message}", highlight=False)
    raise SystemExit(1)


def load_or_fail(state: CliState) -> tuple[Path, SecretsConfig, str]:
    """Load config and profile, exiting on ConfigError."""
    try:
        path, config = state.load_config()
    except ConfigError as exc:
        fail(str(exc))
    return path, config, state.resolve_profile()


def acquire_passphrase(passphrase_file: Optional[Path], confirm: bool) -> Passphrase:
    """Get the run's passphrase from a file, the environment, or a prompt.

    Args:
        passphrase_file: File whose first line is the passphrase.
        confirm: Ask twice when prompting (used when encrypting).

    Returns:
        Passphrase: Held only for the current run.
    """
    if passphrase_file is not None:
        lines = passphrase_file.read_text(encoding="utf-8").splitlines()
        secret = lines[0] if lines else ""
    elif os.environ.get(PASSPHRASE_ENV):
        secret = os.environ[PASSPHRASE_ENV]
    else:
        secret = click.prompt(
            "Enter passphrase",
            hide_input=True,
            confirmation_prompt="Enter passphrase again" if confirm else False,
        )
    if not secret:
        fail("passphrase must not be empty")
    return Passphrase(secret)


def build_policy(config: SecretsConfig, jobs: Optional[int] = None, **flags: bool) -> TransferPolicy:
    """Merge command-line overrides onto the config's settings.

    Flags only ever switch a setting on.
    """
    update: dict = {name: True for name, value in flags.items() if value}
    if jobs is not None:
        update["jobs"] = jobs
    return config.settings.model_copy(update=update)


@contextmanager
def interrupt_cancels(engine: TransferEngine) -> Iterator[None]:
    """Turn Ctrl-C into a cancellation between operations."""

    def _handler(signum, frame):
        console.print("\n[yellow]Interrupted, finishing in-flight operations...[/]")
        engine.cancel()

    installed = False
    previous = None
    try:
        previous = signal.signal(signal.SIGINT, _handler)
        installed = True
    except ValueError:
        logger.debug("Not on the main thread, Ctrl-C will not cancel gracefully")
    try:
        yield
    finally:
        if installed:
            signal.signal(signal.SIGINT, previous)


_STATUS_STYLE = {
    OperationStatus.SUCCEEDED: "[green]ok[/]",
    OperationStatus.SKIPPED: "[dim]unchanged[/]",
    OperationStatus.FAILED: "[bold red]error[/]",
    OperationStatus.CANCELLED: "[yellow]cancelled[/]",
    OperationStatus.ROLLED_BACK: "[yellow]rolled back[/]",
}


def print_result(result: OperationResult) -> None:
    """Progress line for one finished operation."""
    console.print(
        f"  {result.operation.action.value}ing [cyan]{result.operation.rel_path}[/]... "
        f"{_STATUS_STYLE[result.status]}",
        highlight=False,
    )


def print_verify_report(report: VerifyReport, title: str = "Integrity check") -> None:
    """Render a verifier report."""
    if report.failed:
        table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
        table.add_column("Path", style="cyan")
        table.add_column("Problem", style="red")
        for path, reason in sorted(report.failed.items()):
            table.add_row(path, reason)
        console.print(f"\n[bold red]{title}: {len(report.failed)} failure(s)[/]")
        console.print(table)
    else:
        console.print(
            f"\n[green]{title}: {len(report.passed)} file(s) verified "
            f"across {len(report.manifests)} manifest(s)[/]"
        )
    for path in sorted(report.unlisted):
        console.print(f"  [yellow]not listed in any manifest:[/] {path}", highlight=False)


def print_run_report(report: RunReport) -> None:
    """Render the aggregate result of an export or import."""
    verb = report.direction.value.capitalize()

    if report.failed or report.cancelled:
        table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
        table.add_column("Path", style="cyan")
        table.add_column("Status")
        table.add_column("Kind", style="red")
        table.add_column("Detail", style="dim")
        for r in report.failed + report.cancelled:
            table.add_row(
                r.operation.rel_path,
                _STATUS_STYLE[r.status],
                r.kind.value if r.kind else "",
                r.message,
            )
        console.print(f"\n[bold red]{verb} failures:[/]")
        console.print(table)

    if report.aborted:
        console.print(f"\n[bold red]Run aborted:[/] {report.aborted}", highlight=False)

    if report.verification is not None:
        print_verify_report(report.verification, title="Closing integrity pass")

    border = "green" if report.ok else "red"
    headline = f"[bold green]{verb} completed successfully[/]" if report.ok else f"[bold red]{verb} finished with errors[/]"
    console.print(Panel(
        f"{headline}\n"
        f"Succeeded: {len(report.succeeded)}\n"
        f"Failed: {len(report.failed)}\n"
        f"Cancelled: {len(report.cancelled)}",
        title=verb,
        border_style=border,
    ))
