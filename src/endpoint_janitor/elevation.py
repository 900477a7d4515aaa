"""!
@brief Elevation helpers.
@details Remediation and locale changes write to HKLM, other users' hives and
Program Files; they must run elevated (or as SYSTEM under a management agent).
"""
from __future__ import annotations

import ctypes
import os
import subprocess
import sys
from typing import Sequence


def is_admin() -> bool:
    """!
    @brief Determine whether the current process token has administrative rights.
    """

    if os.name != "nt":
        return False
    try:
        shell32 = ctypes.windll.shell32  # type: ignore[attr-defined]
        return bool(shell32.IsUserAnAdmin())
    except Exception:
        return False


def relaunch_as_admin(argv: Sequence[str] | None = None) -> bool:
    """!
    @brief Relaunch the current interpreter through the UAC ``runas`` verb.
    @returns ``True`` when the relaunch request was issued successfully.
    """

    if os.name != "nt":
        return False
    try:
        shell32 = ctypes.windll.shell32  # type: ignore[attr-defined]
    except Exception:
        return False

    arguments = list(argv) if argv is not None else list(sys.argv[1:])
    params = subprocess.list2cmdline(["-m", "endpoint_janitor", *arguments])
    result = shell32.ShellExecuteW(None, "runas", sys.executable, params, None, 1)
    return int(result) > 32


__all__ = ["is_admin", "relaunch_as_admin"]
