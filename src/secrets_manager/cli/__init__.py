"""
secrets-manager CLI.

The main Click group is defined here; each command lives in its own
module and is attached through a register function.

Entry point: secrets_manager.cli:main
"""

from __future__ import annotations

import logging
from pathlib import Path

import click

from .. import __version__
from ._common import CliState


@click.group()
@click.version_option(version=__version__, prog_name="secrets-manager")
@click.option(
    "--profile", "-p", default=None,
    help="Profile whose rules apply [default: $SECRETS_MANAGER_PROFILE or the hostname].",
)
@click.option(
    "--config", "-c", "config_path", default=None,
    type=click.Path(dir_okay=False, path_type=Path),
    help="Config file [default: searched in $XDG_CONFIG_HOME/secrets-manager and .].",
)
@click.option("--verbose", "-v", is_flag=True, help="Log each step.")
@click.pass_context
def main(ctx: click.Context, profile, config_path, verbose):
    """Export and import secrets through encrypted, checksummed backups."""
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(name)s: %(message)s",
    )
    ctx.obj = CliState(profile=profile, config_path=config_path)


# ---------------------------------------------------------------------------
# Register all commands from modular files
# ---------------------------------------------------------------------------

from .rules import register_rules_commands
from .transfer import register_transfer_commands
from .verify import register_verify_commands

register_transfer_commands(main)
register_verify_commands(main)
register_rules_commands(main)
