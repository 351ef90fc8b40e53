"""Transfer commands: export, import."""

from __future__ import annotations

from pathlib import Path

import click

from ._common import (
    acquire_passphrase,
    build_policy,
    console,
    fail,
    interrupt_cancels,
    load_or_fail,
    print_result,
    print_run_report,
)
from ..cipher import AgeCipher
from ..engine import TransferEngine
from ..errors import ConfigError, ManifestError
from ..models import Direction
from ..resolver import resolve

_passphrase_file_option = click.option(
    "--passphrase-file", default=None,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Read the passphrase from a file instead of prompting.",
)
_jobs_option = click.option(
    "--jobs", "-j", default=None, type=click.IntRange(min=1),
    help="Operations to run concurrently [default: 1].",
)
_fail_fast_option = click.option(
    "--fail-fast", is_flag=True, help="Stop starting new operations after the first failure.",
)


def register_transfer_commands(main: click.Group) -> None:
    """Register the export and import commands."""

    @main.command("export")
    @click.argument("destination", type=click.Path(file_okay=False, path_type=Path))
    @_jobs_option
    @_fail_fast_option
    @click.option(
        "--cleanup-failed-siblings", is_flag=True,
        help="Remove files exported by this run next to a file that failed.",
    )
    @click.option("--bundle-config", is_flag=True, help="Copy the config file into the export root.")
    @click.option(
        "--no-clobber", is_flag=True,
        help="Refuse to replace existing ciphertexts that hold a different secret.",
    )
    @_passphrase_file_option
    @click.pass_obj
    def export_cmd(
        state, destination, jobs, fail_fast, cleanup_failed_siblings, bundle_config, no_clobber, passphrase_file,
    ):
        """Export secrets to DESTINATION.

        Encrypts every file the profile's export rules name into
        DESTINATION/<endpoint>/<file>.age, records checksums in each
        directory's sha256sums.txt, then re-verifies the result.

        Examples:

            secrets-manager export /mnt/usb/secrets

            secrets-manager -p laptop export ./backup --jobs 4
        """
        config_path, config, profile = load_or_fail(state)
        try:
            operations = resolve(config, profile, Direction.EXPORT)
        except ConfigError as exc:
            fail(str(exc))

        if not operations:
            console.print(f"\n[dim]No export rules apply to profile {profile}. Nothing to do.[/]\n")
            return

        policy = build_policy(
            config, jobs=jobs, fail_fast=fail_fast,
            cleanup_failed_siblings=cleanup_failed_siblings, no_clobber=no_clobber,
        )
        passphrase = acquire_passphrase(passphrase_file, confirm=True)
        engine = TransferEngine(AgeCipher(passphrase, policy.scrypt_work_factor), policy, on_result=print_result)

        console.print(
            f"\n[cyan]Exporting {len(operations)} secret(s) for profile {profile} to {destination}...[/]",
            highlight=False,
        )
        with interrupt_cancels(engine):
            try:
                report = engine.export_secrets(
                    operations, destination, bundle=[config_path] if bundle_config else [],
                )
            except (OSError, ManifestError) as exc:
                fail(str(exc))

        print_run_report(report)
        if not report.ok:
            raise SystemExit(1)

    @main.command("import")
    @click.argument("source", type=click.Path(file_okay=False, path_type=Path))
    @_jobs_option
    @_fail_fast_option
    @click.option(
        "--no-clobber", is_flag=True,
        help="Refuse to overwrite existing files whose content differs.",
    )
    @_passphrase_file_option
    @click.pass_obj
    def import_cmd(state, source, jobs, fail_fast, no_clobber, passphrase_file):
        """Import secrets from the export at SOURCE.

        Checks each ciphertext against its directory's sha256sums.txt,
        decrypts it, checks the embedded plaintext checksum, and places
        it with the ciphertext's owner and permissions.

        Examples:

            secrets-manager import /mnt/usb/secrets
        """
        _, config, profile = load_or_fail(state)
        try:
            operations = resolve(config, profile, Direction.IMPORT)
        except ConfigError as exc:
            fail(str(exc))

        if not operations:
            console.print(f"\n[dim]No import rules apply to profile {profile}. Nothing to do.[/]\n")
            return

        policy = build_policy(config, jobs=jobs, fail_fast=fail_fast, no_clobber=no_clobber)
        passphrase = acquire_passphrase(passphrase_file, confirm=False)
        engine = TransferEngine(AgeCipher(passphrase, policy.scrypt_work_factor), policy, on_result=print_result)

        console.print(
            f"\n[cyan]Importing {len(operations)} secret(s) for profile {profile} from {source}...[/]",
            highlight=False,
        )
        with interrupt_cancels(engine):
            try:
                report = engine.import_secrets(operations, source)
            except OSError as exc:
                fail(str(exc))

        print_run_report(report)
        if not report.ok:
            raise SystemExit(1)
