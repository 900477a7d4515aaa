"""!
@brief Guardrails consulted before the host is modified.
@details Remediation only ever deletes from a fixed set of Teams locations.
Every registry handle and path is checked against the allow-lists in
:mod:`constants` before deletion, so a bad template or configuration entry
fails loudly instead of removing something unrelated.
"""
from __future__ import annotations

from pathlib import Path
from typing import Sequence

from . import constants, fs_tools, registry_tools

_MIN_PATH_DEPTH = 3
"""!
@brief ``C:\\Users\\x`` is never a valid target; Teams data sits deeper.
"""


def require_admin(*, is_admin: bool, dry_run: bool) -> None:
    """!
    @raises PermissionError When a destructive run lacks administrative rights.
    """

    if dry_run or is_admin:
        return
    raise PermissionError(
        "Administrative rights are required; re-run elevated or as SYSTEM, or use --dry-run."
    )


def ensure_registry_target_allowed(handle: str, value_name: str | None = None) -> None:
    """!
    @brief Refuse registry deletions outside the Teams allow-list.
    @details Key deletions must end in one of the known Teams key paths.
    Value deletions must name one of the known autostart values.
    @raises ValueError For any target outside the allow-list.
    """

    _, subpath = registry_tools.parse_handle(handle)
    normalized = subpath.upper()

    if value_name is not None:
        if value_name.upper() not in constants.REGISTRY_VALUE_ALLOWED:
            raise ValueError(f"Refusing to delete non-whitelisted registry value: {handle}\\{value_name}")
        return

    if not any(normalized.endswith(suffix) for suffix in constants.REGISTRY_ALLOWED_SUFFIXES):
        raise ValueError(f"Refusing to delete non-whitelisted registry key: {handle}")


def ensure_path_allowed(
    path: str | Path,
    *,
    extra_fragments: Sequence[str] = (),
) -> None:
    """!
    @raises ValueError When ``path`` is shallow or outside the allow-list.
    """

    normalized = fs_tools.normalize_windows_path(path)
    parts = [part for part in normalized.split("\\") if part]
    if len(parts) < _MIN_PATH_DEPTH:
        raise ValueError(f"Refusing to operate on shallow path: {path}")

    fragments = tuple(constants.PATH_ALLOWED_FRAGMENTS) + tuple(
        fs_tools.normalize_windows_path(fragment) for fragment in extra_fragments
    )
    if not fs_tools.is_path_allowed(path, fragments):
        raise ValueError(f"Refusing to operate on non-whitelisted path: {path}")
