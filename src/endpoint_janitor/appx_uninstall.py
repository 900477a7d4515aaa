"""!
@file appx_uninstall.py
@brief Microsoft Store (AppX) package removal for consumer Teams.
@details Windows 11 ships a consumer "Chat" Teams package named
``MicrosoftTeams`` that shows up next to classic Teams. Names are matched
exactly so the new Teams client (``MSTeams``) is never selected.
"""

from __future__ import annotations

import json
from typing import Dict, Iterable, List

from . import exec_utils, logging_ext

__all__ = [
    "AppxQueryError",
    "find_packages",
    "find_provisioned_packages",
    "remove_package",
    "remove_provisioned_package",
]


class AppxQueryError(RuntimeError):
    """!
    @brief A package query did not complete, so absence cannot be assumed.
    """


def _check_query(result: exec_utils.CommandResult, what: str) -> None:
    if result.ok:
        return
    if result.timed_out:
        reason = "timed out"
    else:
        reason = result.stderr.strip() or result.error or f"exit {result.returncode}"
    raise AppxQueryError(f"{what} query failed: {reason}")


def _run_powershell(script: str, *, event: str, timeout: int = 120, dry_run: bool = False) -> exec_utils.CommandResult:
    return exec_utils.run_powershell(script, event=event, timeout=timeout, dry_run=dry_run)


def _parse_json_rows(text: str) -> List[Dict[str, str]]:
    """!
    @brief ``ConvertTo-Json`` emits an object for one row and a list otherwise.
    """

    stripped = text.strip()
    if not stripped:
        return []
    try:
        data = json.loads(stripped)
    except json.JSONDecodeError:
        logging_ext.get_human_logger().debug("Unparseable AppX query output: %s", stripped[:200])
        return []
    if isinstance(data, dict):
        return [data]
    if isinstance(data, list):
        return [row for row in data if isinstance(row, dict)]
    return []


def _name_filter(names: Iterable[str]) -> str:
    quoted = ",".join(exec_utils.ps_quote(name) for name in names)
    return f"@({quoted}) -contains $_.Name"


def find_packages(names: Iterable[str]) -> List[Dict[str, str]]:
    """!
    @brief Installed AppX packages (any user) whose ``Name`` is in ``names``.
    @returns Rows with ``Name``, ``PackageFullName`` and ``Version``,
    deduplicated on ``PackageFullName``.
    @raises AppxQueryError When PowerShell fails or times out.
    """

    wanted = [name for name in names if name]
    if not wanted:
        return []

    script = (
        "Get-AppxPackage -AllUsers -ErrorAction SilentlyContinue | "
        f"Where-Object {{ {_name_filter(wanted)} }} | "
        "Select-Object Name, PackageFullName, @{n='Version';e={$_.Version.ToString()}} | "
        "ConvertTo-Json -Compress"
    )
    result = _run_powershell(script, event="appx_query", timeout=120)
    _check_query(result, "AppX package")

    unique: List[Dict[str, str]] = []
    seen: set[str] = set()
    for row in _parse_json_rows(result.stdout):
        full_name = str(row.get("PackageFullName") or "")
        if row.get("Name") not in wanted or not full_name or full_name in seen:
            continue
        seen.add(full_name)
        unique.append(row)
    return unique


def find_provisioned_packages(names: Iterable[str]) -> List[Dict[str, str]]:
    """!
    @brief Provisioned packages whose ``DisplayName`` is in ``names``.
    @details Provisioned packages are installed into every new profile, so
    leaving them behind brings consumer Teams back for the next user.
    """

    wanted = [name for name in names if name]
    if not wanted:
        return []

    quoted = ",".join(exec_utils.ps_quote(name) for name in wanted)
    script = (
        "Get-AppxProvisionedPackage -Online -ErrorAction SilentlyContinue | "
        f"Where-Object {{ @({quoted}) -contains $_.DisplayName }} | "
        "Select-Object DisplayName, PackageName | ConvertTo-Json -Compress"
    )
    result = _run_powershell(script, event="appx_provisioned_query", timeout=120)
    _check_query(result, "Provisioned package")
    return [
        row
        for row in _parse_json_rows(result.stdout)
        if row.get("DisplayName") in wanted and row.get("PackageName")
    ]


def remove_package(full_name: str, *, dry_run: bool = False) -> bool:
    """!
    @brief Remove an installed package for all users.
    """

    script = f"Remove-AppxPackage -Package {exec_utils.ps_quote(full_name)} -AllUsers -ErrorAction Stop"
    result = _run_powershell(script, event="appx_remove", timeout=300, dry_run=dry_run)
    if not (result.skipped or result.ok):
        logging_ext.get_human_logger().warning(
            "Failed to remove AppX package %s: %s", full_name, result.stderr.strip() or result.error
        )
        return False
    return True


def remove_provisioned_package(package_name: str, *, dry_run: bool = False) -> bool:
    script = (
        "Remove-AppxProvisionedPackage -Online "
        f"-PackageName {exec_utils.ps_quote(package_name)} -ErrorAction Stop"
    )
    result = _run_powershell(script, event="appx_provisioned_remove", timeout=300, dry_run=dry_run)
    if not (result.skipped or result.ok):
        logging_ext.get_human_logger().warning(
            "Failed to remove provisioned package %s: %s",
            package_name,
            result.stderr.strip() or result.error,
        )
        return False
    return True
