"""!
@brief User profile enumeration and offline registry hive mounting.
@details Classic Teams installs per user, so detection has to look inside every
profile on the device, not just the account running the script (which under an
endpoint management agent is SYSTEM). Logged-on users already have their hive
under ``HKU\\<SID>``; everyone else's ``NTUSER.DAT`` is mounted with
``reg load`` for the duration of the run and unloaded afterwards.
"""

from __future__ import annotations

import os
import re
import shutil
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, List

from . import constants, exec_utils, logging_ext, registry_tools


@dataclass(frozen=True)
class UserProfile:
    """!
    @brief A local profile folder and the hive file that belongs to it.
    """

    sid: str | None
    name: str
    path: Path
    hive_file: Path

    def to_dict(self) -> dict[str, object]:
        return {
            "sid": self.sid,
            "name": self.name,
            "path": str(self.path),
            "hive_file": str(self.hive_file),
        }


@dataclass
class MountedHive:
    """!
    @brief Where a profile's registry hive is reachable for this run.
    @details ``root_handle`` is ``None`` when the hive could not be mounted;
    callers then restrict themselves to filesystem checks for that profile.
    """

    profile: UserProfile
    root_handle: str | None
    loaded_by_us: bool = False
    error: str | None = None

    @property
    def available(self) -> bool:
        return self.root_handle is not None


def _default_profile_path() -> Path:
    system_drive = os.environ.get("SystemDrive", "C:")
    return Path(f"{system_drive}\\Users\\{constants.DEFAULT_PROFILE_NAME}")


def list_user_profiles(*, include_default: bool = False) -> List[UserProfile]:
    """!
    @brief Enumerate real user profiles registered under ``ProfileList``.
    @details Only ``S-1-5-21-*`` SIDs whose profile folder still exists are
    returned. With ``include_default`` the Default profile is appended so
    leftovers baked into the template for new users are caught too.
    """

    human_logger = logging_ext.get_human_logger()
    profiles: List[UserProfile] = []

    try:
        sids = list(registry_tools.iter_subkeys(constants.HKLM, constants.PROFILE_LIST_KEY))
    except OSError as exc:
        human_logger.warning("Unable to enumerate ProfileList: %s", exc)
        sids = []

    for sid in sids:
        if not sid.startswith(constants.USER_SID_PREFIX):
            continue
        raw_path = registry_tools.get_value(
            constants.HKLM,
            f"{constants.PROFILE_LIST_KEY}\\{sid}",
            "ProfileImagePath",
        )
        if not raw_path:
            continue
        path = Path(os.path.expandvars(str(raw_path)))
        if not path.is_dir():
            human_logger.debug("Skipping profile %s; %s does not exist", sid, path)
            continue
        profiles.append(
            UserProfile(
                sid=sid,
                name=path.name,
                path=path,
                hive_file=path / constants.HIVE_FILENAME,
            )
        )

    if include_default:
        default_path = _default_profile_path()
        if default_path.is_dir():
            profiles.append(
                UserProfile(
                    sid=None,
                    name=constants.DEFAULT_PROFILE_NAME,
                    path=default_path,
                    hive_file=default_path / constants.HIVE_FILENAME,
                )
            )

    return profiles


def mount_name(profile: UserProfile) -> str:
    """!
    @brief ``HKU`` subkey used when ``reg load`` mounts ``profile``.
    """

    token = re.sub(r"[^A-Za-z0-9_-]+", "_", profile.sid or profile.name)
    return f"{constants.HIVE_MOUNT_PREFIX}{token}"


def mount_profile(profile: UserProfile, *, dry_run: bool = False) -> MountedHive:
    """!
    @brief Make ``profile``'s hive reachable under ``HKU``.
    @details A hive that is already loaded (logged-on user) is used in place
    and never unloaded by us. Dry-run still loads the hive because loading is
    read-only and detection needs it.
    """

    human_logger = logging_ext.get_human_logger()

    if profile.sid and registry_tools.key_exists(f"HKU\\{profile.sid}"):
        human_logger.debug("Hive for %s already loaded", profile.name)
        return MountedHive(profile=profile, root_handle=f"HKU\\{profile.sid}")

    if not profile.hive_file.exists():
        return MountedHive(profile=profile, root_handle=None, error="hive file missing")

    reg_executable = shutil.which("reg")
    if not reg_executable:
        human_logger.warning("reg.exe not found; cannot load hive for %s", profile.name)
        return MountedHive(profile=profile, root_handle=None, error="reg.exe unavailable")

    handle = f"HKU\\{mount_name(profile)}"
    if registry_tools.key_exists(handle):
        # A previous run died before unloading; reuse and clean up this time.
        return MountedHive(profile=profile, root_handle=handle, loaded_by_us=True)

    result = exec_utils.run_command(
        [reg_executable, "load", handle, str(profile.hive_file)],
        event="registry_hive_load",
        timeout=60,
        human_message=f"Loading registry hive for {profile.name}",
        extra={"profile": profile.name, "sid": profile.sid},
    )
    if not result.ok:
        human_logger.warning(
            "Could not load hive for %s (code %s): %s",
            profile.name,
            result.returncode,
            result.stderr.strip(),
        )
        return MountedHive(
            profile=profile,
            root_handle=None,
            error=f"reg load exited with {result.returncode}",
        )

    return MountedHive(profile=profile, root_handle=handle, loaded_by_us=True)


def unmount(mounted: MountedHive) -> bool:
    """!
    @brief Unload a hive mounted by :func:`mount_profile`.
    @returns ``True`` when nothing had to be done or the unload succeeded.
    """

    if not mounted.loaded_by_us or mounted.root_handle is None:
        return True

    human_logger = logging_ext.get_human_logger()
    reg_executable = shutil.which("reg") or "reg.exe"
    result = exec_utils.run_command(
        [reg_executable, "unload", mounted.root_handle],
        event="registry_hive_unload",
        timeout=60,
        human_message=f"Unloading registry hive for {mounted.profile.name}",
        extra={"profile": mounted.profile.name, "key": mounted.root_handle},
    )
    if not result.ok:
        human_logger.warning(
            "Failed to unload %s (code %s); it will be released on reboot",
            mounted.root_handle,
            result.returncode,
        )
        return False
    mounted.loaded_by_us = False
    return True


@contextmanager
def mounted_user_hives(
    profiles: List[UserProfile] | None = None,
    *,
    include_default: bool = False,
    dry_run: bool = False,
) -> Iterator[List[MountedHive]]:
    """!
    @brief Mount every profile hive for the duration of the ``with`` block.
    @details Hives loaded here are unloaded in reverse order on exit, also when
    the block raises.
    """

    machine_logger = logging_ext.get_machine_logger()
    targets = profiles if profiles is not None else list_user_profiles(include_default=include_default)

    mounted: List[MountedHive] = []
    try:
        for profile in targets:
            mounted.append(mount_profile(profile, dry_run=dry_run))
        machine_logger.info(
            "user_hives_mounted",
            extra=logging_ext.event_extra(
                "user_hives_mounted",
                profiles=[
                    {
                        "profile": item.profile.name,
                        "handle": item.root_handle,
                        "loaded_by_us": item.loaded_by_us,
                        "error": item.error,
                    }
                    for item in mounted
                ],
            ),
        )
        yield mounted
    finally:
        for item in reversed(mounted):
            unmount(item)


__all__ = [
    "MountedHive",
    "UserProfile",
    "list_user_profiles",
    "mount_name",
    "mount_profile",
    "mounted_user_hives",
    "unmount",
]
