"""!
@brief Registry management helpers.
@details Reads go through :mod:`winreg`; deletions and backups go through
``reg.exe`` via :mod:`exec_utils` so every mutation is logged and honours
dry-run. Keys are addressed by handle strings such as
``HKU\\S-1-5-21-...\\Software\\Microsoft\\Office\\Teams``.
"""
from __future__ import annotations

import datetime
import re
import shutil
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, Tuple

from . import constants, exec_utils, logging_ext

try:  # pragma: no cover - exercised through mocks on non-Windows platforms.
    import winreg
except ImportError:  # pragma: no cover - handled gracefully during tests.
    winreg = None  # type: ignore[assignment]


def _ensure_winreg() -> None:
    if winreg is None:  # pragma: no cover - simplifies non-Windows test runs.
        raise FileNotFoundError("Windows registry APIs are unavailable on this platform")


def parse_handle(handle: str) -> Tuple[int, str]:
    """!
    @brief Split ``HKLM\\SOFTWARE\\...`` into a root constant and subpath.
    @details Accepts short and long hive names, PowerShell style ``HKLM:``
    prefixes and forward slashes.
    @raises ValueError When the hive is not recognised.
    """

    cleaned = str(handle).strip().replace("/", "\\")
    hive, _, subpath = cleaned.partition("\\")
    hive = hive.rstrip(":").upper()
    try:
        root = constants.REGISTRY_ROOTS[hive]
    except KeyError as exc:
        raise ValueError(f"Unsupported registry hive in {handle!r}") from exc
    return root, subpath.strip("\\")


def join_handle(*parts: str) -> str:
    return "\\".join(part.strip("\\") for part in parts if part and part.strip("\\"))


def hive_name(root: int) -> str:
    """!
    @brief Provide a friendly identifier for a registry hive.
    """

    mapping = {
        constants.HKLM: "HKLM",
        constants.HKCU: "HKCU",
        constants.HKU: "HKU",
        constants.HKCR: "HKCR",
    }
    return mapping.get(root, hex(root))


@contextmanager
def open_key(root: int, path: str, access: int | None = None) -> Iterator[Any]:
    """!
    @brief Context manager around ``winreg.OpenKey`` that always closes the handle.
    """

    _ensure_winreg()
    access_mask = access if access is not None else winreg.KEY_READ  # type: ignore[union-attr]
    handle = winreg.OpenKey(root, path, 0, access_mask)  # type: ignore[union-attr]
    try:
        yield handle
    finally:
        winreg.CloseKey(handle)  # type: ignore[union-attr]


def iter_subkeys(root: int, path: str) -> Iterator[str]:
    _ensure_winreg()
    with open_key(root, path) as handle:
        subkey_count, _, _ = winreg.QueryInfoKey(handle)  # type: ignore[union-attr]
        for index in range(subkey_count):
            yield winreg.EnumKey(handle, index)  # type: ignore[union-attr]


def iter_values(root: int, path: str) -> Iterator[Tuple[str, Any]]:
    _ensure_winreg()
    with open_key(root, path) as handle:
        _, value_count, _ = winreg.QueryInfoKey(handle)  # type: ignore[union-attr]
        for index in range(value_count):
            name, value, _ = winreg.EnumValue(handle, index)  # type: ignore[union-attr]
            yield name, value


def read_values(root: int, path: str) -> Dict[str, Any]:
    """!
    @brief Read all values beneath ``root``/``path``; empty when missing.
    """

    try:
        return dict(iter_values(root, path))
    except OSError:
        return {}


def get_value(root: int, path: str, value_name: str, default: Any | None = None) -> Any | None:
    try:
        _ensure_winreg()
        with open_key(root, path) as handle:
            value, _ = winreg.QueryValueEx(handle, value_name)  # type: ignore[union-attr]
            return value
    except OSError:
        return default


def key_exists(handle: str) -> bool:
    """!
    @brief Determine whether the key named by ``handle`` exists.
    """

    root, path = parse_handle(handle)
    try:
        _ensure_winreg()
        with open_key(root, path):
            return True
    except OSError:
        return False


def value_exists(handle: str, value_name: str) -> bool:
    root, path = parse_handle(handle)
    sentinel = object()
    return get_value(root, path, value_name, default=sentinel) is not sentinel


def _reg_executable() -> str | None:
    return shutil.which("reg")


def delete_key(handle: str, *, dry_run: bool = False) -> bool:
    """!
    @brief Remove ``handle`` and its subtree with ``reg delete /f``.
    @returns ``True`` when the key was removed or the run is a dry-run.
    """

    human_logger = logging_ext.get_human_logger()
    reg_executable = _reg_executable()
    if not reg_executable and not dry_run:
        human_logger.warning("reg.exe not found; cannot delete %s", handle)
        return False

    result = exec_utils.run_command(
        [reg_executable or "reg.exe", "delete", handle, "/f"],
        event="registry_key_delete",
        timeout=60,
        dry_run=dry_run,
        human_message=f"Deleting registry key {handle}",
        extra={"key": handle},
    )
    return result.skipped or result.ok


def delete_value(handle: str, value_name: str, *, dry_run: bool = False) -> bool:
    """!
    @brief Remove a single value with ``reg delete /v``.
    """

    human_logger = logging_ext.get_human_logger()
    reg_executable = _reg_executable()
    if not reg_executable and not dry_run:
        human_logger.warning("reg.exe not found; cannot delete %s\\%s", handle, value_name)
        return False

    result = exec_utils.run_command(
        [reg_executable or "reg.exe", "delete", handle, "/v", value_name, "/f"],
        event="registry_value_delete",
        timeout=60,
        dry_run=dry_run,
        human_message=f"Deleting registry value {handle}\\{value_name}",
        extra={"key": handle, "value": value_name},
    )
    return result.skipped or result.ok


def _sanitize_backup_filename(handle: str, index: int) -> str:
    token = re.sub(r"[^A-Za-z0-9._-]+", "_", handle).strip("_") or f"key_{index}"
    return f"{index:02d}_{token}.reg"


def export_keys(
    handles: Iterable[str],
    destination: str | Path,
    *,
    dry_run: bool = False,
) -> Dict[str, Any]:
    """!
    @brief Export registry keys to ``.reg`` files before they are deleted.
    @details Each run writes into a timestamped subdirectory of
    ``destination``. Without ``reg.exe`` placeholder files are written so the
    backup trail still lists what was touched.
    @returns Summary with ``destination``, ``artifacts`` and ``errors``.
    """

    unique: list[str] = []
    seen: set[str] = set()
    for handle in handles:
        text = str(handle).strip()
        if text and text.upper() not in seen:
            seen.add(text.upper())
            unique.append(text)

    summary: Dict[str, Any] = {
        "destination": None,
        "performed": False,
        "artifacts": [],
        "errors": [],
    }
    if not unique:
        return summary

    timestamp = datetime.datetime.now(datetime.timezone.utc).strftime("%Y%m%d-%H%M%S")
    run_directory = Path(destination) / f"registry-{timestamp}"
    summary["destination"] = str(run_directory)

    if not dry_run:
        run_directory.mkdir(parents=True, exist_ok=True)

    reg_executable = _reg_executable()
    for index, handle in enumerate(unique, 1):
        export_path = run_directory / _sanitize_backup_filename(handle, index)
        if dry_run:
            summary["artifacts"].append(str(export_path))
            continue

        if reg_executable:
            result = exec_utils.run_command(
                [reg_executable, "export", handle, str(export_path), "/y"],
                event="registry_backup_export",
                timeout=120,
                extra={"key": handle, "path": str(export_path)},
            )
            if result.ok:
                summary["artifacts"].append(str(export_path))
            else:
                summary["errors"].append(f"{handle}: export failed with code {result.returncode}")
            continue

        try:
            export_path.write_text(f"; Placeholder backup for {handle}\n", encoding="utf-8")
        except OSError as exc:
            summary["errors"].append(f"{handle}: placeholder backup failed ({exc})")
        else:
            summary["artifacts"].append(str(export_path))

    summary["performed"] = bool(summary["artifacts"]) and not dry_run
    return summary


__all__ = [
    "delete_key",
    "delete_value",
    "export_keys",
    "get_value",
    "hive_name",
    "iter_subkeys",
    "iter_values",
    "join_handle",
    "key_exists",
    "open_key",
    "parse_handle",
    "read_values",
    "value_exists",
]
