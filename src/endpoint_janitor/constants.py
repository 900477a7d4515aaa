"""!
@brief Static data for Endpoint Janitor.
@details Registry roots, well-known SIDs, and the fixed list of locations that
classic Microsoft Teams leaves behind. Detection and remediation both read from
here so the two can never disagree about what counts as a leftover.
"""
from __future__ import annotations

from typing import Dict, Tuple

try:  # pragma: no cover - Windows registry handles are optional on test hosts.
    import winreg
except ImportError:  # pragma: no cover - non-Windows hosts use the numeric values.
    winreg = None  # type: ignore[assignment]


if winreg is not None:  # pragma: no branch - deterministic assignments.
    HKLM = winreg.HKEY_LOCAL_MACHINE
    HKCU = winreg.HKEY_CURRENT_USER
    HKCR = winreg.HKEY_CLASSES_ROOT
    HKU = winreg.HKEY_USERS
else:  # pragma: no cover - exercised implicitly in non-Windows CI.
    HKLM = 0x80000002
    HKCU = 0x80000001
    HKCR = 0x80000000
    HKU = 0x80000003


REGISTRY_ROOTS: Dict[str, int] = {
    "HKLM": HKLM,
    "HKEY_LOCAL_MACHINE": HKLM,
    "HKCU": HKCU,
    "HKEY_CURRENT_USER": HKCU,
    "HKCR": HKCR,
    "HKEY_CLASSES_ROOT": HKCR,
    "HKU": HKU,
    "HKEY_USERS": HKU,
}

# ---------------------------------------------------------------------------
# User profiles
# ---------------------------------------------------------------------------

PROFILE_LIST_KEY = r"SOFTWARE\Microsoft\Windows NT\CurrentVersion\ProfileList"

USER_SID_PREFIX = "S-1-5-21-"
"""!
@brief Domain and local user accounts; service accounts never carry Teams.
"""

DEFAULT_PROFILE_NAME = "Default"

HIVE_FILENAME = "NTUSER.DAT"

HIVE_MOUNT_PREFIX = "EJ_"
"""!
@brief Prefix for ``HKU`` mount points created by ``reg load``.
"""

# ---------------------------------------------------------------------------
# Classic Teams: machine scope
# ---------------------------------------------------------------------------

TEAMS_MACHINE_INSTALLER_NAME = "Teams Machine-Wide Installer"

TEAMS_MACHINE_INSTALLER_CODES: Tuple[str, ...] = (
    "{731F6BAA-A986-45A4-8936-7C3AAAAA760B}",
    "{39AF0813-FA7B-4860-ADBE-93B9B214B914}",
)
"""!
@brief Product codes published for the x64 and x86 machine-wide installer.
"""

MSI_UNINSTALL_ROOTS: Tuple[Tuple[int, str], ...] = (
    (HKLM, r"SOFTWARE\Microsoft\Windows\CurrentVersion\Uninstall"),
    (HKLM, r"SOFTWARE\WOW6432Node\Microsoft\Windows\CurrentVersion\Uninstall"),
)

MACHINE_RUN_VALUES: Tuple[Tuple[str, str], ...] = (
    (r"HKLM\SOFTWARE\Microsoft\Windows\CurrentVersion\Run", "TeamsMachineInstaller"),
    (r"HKLM\SOFTWARE\WOW6432Node\Microsoft\Windows\CurrentVersion\Run", "TeamsMachineInstaller"),
)

MACHINE_PATHS: Tuple[str, ...] = (
    r"%ProgramFiles%\Teams Installer",
    r"%ProgramFiles(x86)%\Teams Installer",
)

MACHINE_SHORTCUTS: Tuple[str, ...] = (
    r"%PUBLIC%\Desktop\Microsoft Teams.lnk",
    r"%PUBLIC%\Desktop\Microsoft Teams classic (work or school).lnk",
    r"%ProgramData%\Microsoft\Windows\Start Menu\Programs\Microsoft Teams.lnk",
    r"%ProgramData%\Microsoft\Windows\Start Menu\Programs\Microsoft Teams classic (work or school).lnk",
)

TEAMS_APPX_PACKAGES: Tuple[str, ...] = ("MicrosoftTeams",)
"""!
@brief Consumer Teams shipped with Windows 11. The new client (``MSTeams``)
is deliberately absent.
"""

TEAMS_PROCESSES: Tuple[str, ...] = ("Teams.exe",)

# ---------------------------------------------------------------------------
# Classic Teams: per-user scope (relative to a hive root or profile folder)
# ---------------------------------------------------------------------------

USER_REGISTRY_KEYS: Tuple[str, ...] = (
    r"Software\Microsoft\Windows\CurrentVersion\Uninstall\Teams",
    r"Software\Microsoft\Office\Teams",
)

USER_RUN_VALUES: Tuple[Tuple[str, str], ...] = (
    (r"Software\Microsoft\Windows\CurrentVersion\Run", "com.squirrel.Teams.Teams"),
)

USER_UNINSTALLER = r"AppData\Local\Microsoft\Teams\Update.exe"

USER_UNINSTALLER_ARGS: Tuple[str, ...] = ("--uninstall", "-s")

USER_PATHS: Tuple[str, ...] = (
    r"AppData\Local\Microsoft\Teams",
    r"AppData\Roaming\Microsoft\Teams",
    r"AppData\Local\Microsoft\TeamsMeetingAddin",
    r"AppData\Local\Microsoft\TeamsPresenceAddin",
    r"AppData\Local\SquirrelTemp",
)

USER_SHORTCUTS: Tuple[str, ...] = (
    r"AppData\Roaming\Microsoft\Windows\Start Menu\Programs\Microsoft Teams.lnk",
    r"AppData\Roaming\Microsoft\Windows\Start Menu\Programs\Microsoft Teams classic (work or school).lnk",
    r"AppData\Roaming\Microsoft\Internet Explorer\Quick Launch\User Pinned\TaskBar\Microsoft Teams.lnk",
    r"Desktop\Microsoft Teams.lnk",
    r"Desktop\Microsoft Teams classic (work or school).lnk",
)

# ---------------------------------------------------------------------------
# Allow-lists consulted before anything is deleted
# ---------------------------------------------------------------------------

REGISTRY_ALLOWED_SUFFIXES: Tuple[str, ...] = tuple(key.upper() for key in USER_REGISTRY_KEYS)

REGISTRY_VALUE_ALLOWED: Tuple[str, ...] = tuple(
    name.upper() for _, name in MACHINE_RUN_VALUES + USER_RUN_VALUES
)

PATH_ALLOWED_FRAGMENTS: Tuple[str, ...] = (
    "\\MICROSOFT\\TEAMS",
    "\\MICROSOFT\\TEAMSMEETINGADDIN",
    "\\MICROSOFT\\TEAMSPRESENCEADDIN",
    "\\SQUIRRELTEMP",
    "\\TEAMS INSTALLER",
    "\\MICROSOFT TEAMS.LNK",
    "\\MICROSOFT TEAMS CLASSIC (WORK OR SCHOOL).LNK",
)

# ---------------------------------------------------------------------------
# Locale enforcement
# ---------------------------------------------------------------------------

DEFAULT_LANGUAGE = "en-US"

DEFAULT_TIMEZONE = "UTC"

LANGUAGE_CAPABILITY_FAMILIES: Tuple[str, ...] = (
    "Language.Basic",
    "Language.Handwriting",
    "Language.OCR",
    "Language.Speech",
    "Language.TextToSpeech",
)

REQUIRED_CAPABILITY_FAMILY = "Language.Basic"

CAPABILITY_VERSION_SUFFIX = "0.0.1.0"

REBOOT_REQUIRED_CODE = 3010
