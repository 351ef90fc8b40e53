"""Dry-run command: rules."""

from __future__ import annotations

import click
from rich.table import Table

from ._common import console, fail, load_or_fail
from ..errors import ConfigError
from ..models import Direction
from ..resolver import resolve


def register_rules_commands(main: click.Group) -> None:
    """Register the rules command."""

    @main.command("rules")
    @click.option(
        "--direction", "-d",
        type=click.Choice([d.value for d in Direction]), default=Direction.EXPORT.value,
        show_default=True, help="Which rule set to resolve.",
    )
    @click.pass_obj
    def rules(state, direction: str):
        """Show the operations the active profile resolves to.

        Touches no file and asks for no passphrase.

        Examples:

            secrets-manager rules

            secrets-manager -p machine2 rules -d import
        """
        config_path, config, profile = load_or_fail(state)
        try:
            operations = resolve(config, profile, Direction(direction))
        except ConfigError as exc:
            fail(str(exc))

        if not operations:
            console.print(f"\n[dim]No {direction} rules apply to profile {profile}.[/]\n")
            return

        table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
        table.add_column("Source", style="cyan")
        table.add_column("Endpoint", style="green")
        table.add_column("Symlink", style="dim")
        for op in operations:
            table.add_row(
                str(op.source_path),
                str(op.endpoint_path),
                str(op.symlink_target) if op.symlink_target else "",
            )

        console.print(
            f"\n[bold]{len(operations)}[/] {direction} operation(s) for profile "
            f"[cyan]{profile}[/] from {config_path}:\n",
            highlight=False,
        )
        console.print(table)
        console.print()
