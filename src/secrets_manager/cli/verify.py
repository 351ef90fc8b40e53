"""Verification command: verify-export."""

from __future__ import annotations

import json
from pathlib import Path

import click

from ._common import console, fail, print_verify_report
from ..verifier import verify


def register_verify_commands(main: click.Group) -> None:
    """Register the verify-export command."""

    @main.command("verify-export")
    @click.argument("export_root", type=click.Path(path_type=Path))
    @click.option("--json-out", is_flag=True, help="Print the report as JSON.")
    def verify_export(export_root: Path, json_out: bool):
        """Verify the integrity of an existing export.

        Re-hashes every file listed in every sha256sums.txt below
        EXPORT_ROOT. Needs no passphrase. Already done at the end of
        every export.

        Examples:

            secrets-manager verify-export /mnt/usb/secrets
        """
        try:
            report = verify(export_root)
        except OSError as exc:
            fail(str(exc))

        if json_out:
            click.echo(json.dumps(report.to_dict(), indent=2))
        else:
            console.print(f"\n[cyan]Verifying export integrity of {export_root}...[/]", highlight=False)
            print_verify_report(report)
            if report.ok:
                console.print("\n[bold green]Export integrity verified successfully![/]\n")

        if not report.ok:
            raise SystemExit(1)
