"""
Rule resolution: configuration + profile + direction -> operations.

Shared rules apply to every machine and come first, followed by the
rules of the active profile. Each file of a rule becomes one operation,
with ``$profile`` substituted in every path of the rule.

The export-tree side of a rule (``endpoint`` when exporting, ``source``
when importing) must be a normalized relative path; the local side must
be absolute once ``~`` is expanded.
"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Optional

from .errors import ConfigError
from .models import PROFILE_TOKEN, SHARED_PROFILE, Direction, Operation, Rule, SecretsConfig

logger = logging.getLogger("secrets_manager.resolver")

CIPHERTEXT_SUFFIX = ".age"

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")


def substitute_profile(value: str, profile: str) -> str:
    """Replace every ``$profile`` token with the profile name."""
    return value.replace(PROFILE_TOKEN, profile)


def _check_printable(value: str, what: str, profile: str) -> None:
    if _CONTROL_CHARS.search(value):
        raise ConfigError(
            f"profile '{profile}': {what} {value!r} must not contain control characters"
        )


def _check_relative(value: str, what: str, profile: str) -> Path:
    _check_printable(value, what, profile)
    if not value or value.startswith("/"):
        raise ConfigError(
            f"profile '{profile}': {what} '{value}' must be a relative path inside the export"
        )
    for part in value.split("/"):
        if part in ("", ".", ".."):
            raise ConfigError(
                f"profile '{profile}': {what} '{value}' must be a normalized path "
                "(no empty, '.' or '..' components)"
            )
    return Path(value)


def _check_local(value: str, what: str, profile: str) -> Path:
    _check_printable(value, what, profile)
    path = Path(os.path.expanduser(value))
    if not path.is_absolute():
        raise ConfigError(f"profile '{profile}': {what} '{value}' must be an absolute path")
    return path


def _expand_rule(
    rule: Rule,
    profile: str,
    owner: str,
    direction: Direction,
) -> list[Operation]:
    source = substitute_profile(rule.source, profile)
    endpoint = substitute_profile(rule.endpoint, profile)

    seen: set[str] = set()
    for name in rule.files:
        _check_relative(name, "file", owner)
        if name in seen:
            raise ConfigError(f"profile '{owner}' declares file '{name}' twice in one rule")
        seen.add(name)

    operations = []
    if direction == Direction.EXPORT:
        if rule.symlinks_to is not None:
            raise ConfigError(f"profile '{owner}': symlinks_to is only supported on import rules")
        local = _check_local(source, "export source", owner)
        tree = _check_relative(endpoint, "export endpoint", owner)
        for name in rule.files:
            operations.append(Operation(
                action=direction,
                source_path=local / name,
                endpoint_path=tree / (name + CIPHERTEXT_SUFFIX),
            ))
    else:
        tree = _check_relative(source, "import source", owner)
        local = _check_local(endpoint, "import endpoint", owner)
        links: Optional[Path] = None
        if rule.symlinks_to is not None:
            links = _check_local(substitute_profile(rule.symlinks_to, profile), "symlinks_to", owner)
        for name in rule.files:
            operations.append(Operation(
                action=direction,
                source_path=tree / (name + CIPHERTEXT_SUFFIX),
                endpoint_path=local / name,
                symlink_target=links / name if links is not None else None,
            ))
    return operations


def resolve(config: SecretsConfig, profile: str, direction: Direction) -> list[Operation]:
    """Expand the rules that apply to a profile into concrete operations.

    Args:
        config: Parsed configuration.
        profile: Active machine profile.
        direction: Export or import.

    Returns:
        list[Operation]: Operations in rule order, files in declared order.
            Empty when no rule applies.

    Raises:
        ConfigError: On malformed rule data or colliding destinations.
    """
    if not profile or "/" in profile:
        raise ConfigError(f"Invalid profile name: {profile!r}")

    table = config.exports if direction == Direction.EXPORT else config.imports
    groups = [(SHARED_PROFILE, table.get(SHARED_PROFILE, []))]
    if profile != SHARED_PROFILE:
        groups.append((profile, table.get(profile, [])))

    operations: list[Operation] = []
    destinations: dict[Path, str] = {}
    for owner, rules in groups:
        for rule in rules:
            for op in _expand_rule(rule, profile, owner, direction):
                previous = destinations.get(op.endpoint_path)
                if previous is not None:
                    raise ConfigError(
                        f"'{op.endpoint_path}' is the destination of rules in both "
                        f"profile '{previous}' and profile '{owner}'"
                        if previous != owner else
                        f"profile '{owner}' declares destination '{op.endpoint_path}' multiple times"
                    )
                destinations[op.endpoint_path] = owner
                operations.append(op)

    logger.info(
        "Resolved %d %s operations for profile %s",
        len(operations), direction.value, profile,
    )
    return operations
