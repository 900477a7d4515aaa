"""!
@brief Filesystem utilities for Teams residue cleanup.
@details Expands per-profile and machine-wide path templates, filters them to
what actually exists, and deletes them with read-only attributes cleared.
"""
from __future__ import annotations

import os
import shutil
import stat
from pathlib import Path
from typing import Dict, Iterable, List, Sequence

from . import logging_ext


def get_default_log_directory() -> Path:
    """!
    @brief Resolve the default log directory.
    @details ``%ProgramData%\\EndpointJanitor\\logs`` on Windows so the logs
    survive the user session; ``~/.endpoint-janitor/logs`` elsewhere.
    """

    if os.name == "nt":
        program_data = os.environ.get("ProgramData", r"C:\ProgramData")
        return Path(program_data) / "EndpointJanitor" / "logs"
    return Path.home() / ".endpoint-janitor" / "logs"


def normalize_windows_path(path: str | Path) -> str:
    """!
    @brief Upper-case, backslash-separated form used for comparisons.
    """

    text = str(path).replace("/", "\\")
    while "\\\\" in text:
        text = text.replace("\\\\", "\\")
    return text.rstrip("\\").upper()


def expand_machine_path(template: str) -> Path:
    return Path(os.path.expandvars(template))


def profile_paths(profile_root: Path, relative_paths: Iterable[str]) -> List[Path]:
    """!
    @brief Join ``relative_paths`` onto a profile folder.
    """

    root = Path(profile_root)
    return [root / Path(rel.replace("\\", os.sep)) for rel in relative_paths]


def existing_paths(paths: Iterable[Path | str]) -> List[Path]:
    """!
    @brief Keep paths that exist, once each, preserving order.
    """

    seen: set[str] = set()
    found: List[Path] = []
    for raw in paths:
        candidate = Path(raw)
        key = normalize_windows_path(candidate)
        if key in seen:
            continue
        seen.add(key)
        # Unexpanded %VARS% never exist; skip without touching the disk.
        if "%" in str(candidate):
            continue
        try:
            if candidate.exists() or candidate.is_symlink():
                found.append(candidate)
        except OSError:
            continue
    return found


def is_path_allowed(path: str | Path, allow_fragments: Sequence[str]) -> bool:
    normalized = normalize_windows_path(path)
    return any(fragment in normalized for fragment in allow_fragments)


def _handle_readonly(function, path: str, exc_info) -> None:  # pragma: no cover - OS callback
    if isinstance(exc_info[1], PermissionError):
        os.chmod(path, stat.S_IWRITE)
        function(path)
    else:
        raise exc_info[1]


def remove_paths(paths: Iterable[Path | str], *, dry_run: bool = False) -> Dict[str, List[str]]:
    """!
    @brief Delete the supplied paths recursively.
    @returns ``{"removed": [...], "failed": [...], "missing": [...]}``.
    """

    human_logger = logging_ext.get_human_logger()
    machine_logger = logging_ext.get_machine_logger()
    outcome: Dict[str, List[str]] = {"removed": [], "failed": [], "missing": []}

    for raw in paths:
        target = Path(raw)
        machine_logger.info(
            "filesystem_remove_plan",
            extra=logging_ext.event_extra(
                "filesystem_remove_plan", path=str(target), dry_run=bool(dry_run)
            ),
        )

        if dry_run:
            human_logger.info("Dry-run: would remove %s", target)
            outcome["removed"].append(str(target))
            continue

        if not target.exists() and not target.is_symlink():
            human_logger.debug("Skipping %s because it does not exist", target)
            outcome["missing"].append(str(target))
            continue

        human_logger.info("Removing %s", target)
        try:
            if target.is_dir() and not target.is_symlink():
                shutil.rmtree(target, onerror=_handle_readonly)
            else:
                try:
                    target.unlink()
                except PermissionError:
                    os.chmod(target, stat.S_IWRITE)
                    target.unlink()
        except OSError as exc:
            human_logger.warning("Failed to remove %s: %s", target, exc)
            machine_logger.warning(
                "filesystem_remove_failed",
                extra=logging_ext.event_extra(
                    "filesystem_remove_failed", path=str(target), error=str(exc)
                ),
            )
            outcome["failed"].append(str(target))
            continue

        outcome["removed"].append(str(target))

    return outcome


__all__ = [
    "existing_paths",
    "expand_machine_path",
    "get_default_log_directory",
    "is_path_allowed",
    "normalize_windows_path",
    "profile_paths",
    "remove_paths",
]
