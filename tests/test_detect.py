"""!
@brief Classic Teams detection tests.
@details Machine-level queries (MSI, AppX, services, registry) are patched at the
module seams; per-user filesystem checks run against fake profile folders
under ``tmp_path``.
"""

from __future__ import annotations

import json
import logging
import pathlib
import sys

import pytest

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from endpoint_janitor import constants, detect, exec_utils, logging_ext, msi_uninstall, user_hives  # noqa: E402
from endpoint_janitor.detect import Finding, TeamsOptions  # noqa: E402


@pytest.fixture
def clean_machine(monkeypatch):
    """!
    @brief Patch every machine-level query to report nothing.
    @returns Mutable state the test can fill in.
    """

    state = {
        "products": [],
        "values": set(),
        "keys": set(),
        "appx": [],
        "provisioned": [],
        "services": set(),
        "unknown_services": set(),
    }

    monkeypatch.setattr(detect.msi_uninstall, "find_installed_products", lambda: list(state["products"]))
    monkeypatch.setattr(
        detect.registry_tools,
        "value_exists",
        lambda handle, name: (handle.upper(), name.upper()) in state["values"],
    )
    monkeypatch.setattr(detect.registry_tools, "key_exists", lambda handle: handle.upper() in state["keys"])
    monkeypatch.setattr(detect.appx_uninstall, "find_packages", lambda names: list(state["appx"]))
    monkeypatch.setattr(detect.appx_uninstall, "find_provisioned_packages", lambda names: list(state["provisioned"]))

    def fake_status(name):
        if name in state["unknown_services"]:
            return "UNKNOWN"
        return "RUNNING" if name in state["services"] else "MISSING"

    monkeypatch.setattr(detect.tasks_services, "query_service_status", fake_status)
    return state


def _mounted(tmp_path: pathlib.Path, name: str = "alice", handle: str | None = "HKU\\EJ_alice") -> user_hives.MountedHive:
    path = tmp_path / name
    path.mkdir(exist_ok=True)
    profile = user_hives.UserProfile(sid=None, name=name, path=path, hive_file=path / constants.HIVE_FILENAME)
    return user_hives.MountedHive(profile=profile, root_handle=handle, error=None if handle else "hive file missing")


def _touch(path: pathlib.Path) -> pathlib.Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"")
    return path


def test_clean_device_is_compliant(clean_machine, tmp_path) -> None:
    report = detect.detect(TeamsOptions(), [_mounted(tmp_path)])

    assert report.compliant is True
    assert report.profiles == ["alice"]
    assert report.summary() == "Classic Teams not detected"


def test_machine_leftovers_are_reported(clean_machine, tmp_path) -> None:
    installer_dir = tmp_path / "Teams Installer"
    installer_dir.mkdir()
    run_key = constants.MACHINE_RUN_VALUES[0][0]
    clean_machine["products"].append(
        msi_uninstall.MsiProduct(
            product_code=constants.TEAMS_MACHINE_INSTALLER_CODES[0],
            display_name="Teams Machine-Wide Installer",
            version="1.5.0.30767",
            handle="HKLM\\...",
        )
    )
    clean_machine["values"].add((run_key.upper(), "TEAMSMACHINEINSTALLER"))
    clean_machine["appx"].append({"Name": "MicrosoftTeams", "PackageFullName": "MicrosoftTeams_1_x64__x"})
    clean_machine["provisioned"].append({"DisplayName": "MicrosoftTeams", "PackageName": "MicrosoftTeams_1_neutral"})
    clean_machine["services"].add("TeamsUpdater")

    options = TeamsOptions(services=("TeamsUpdater", "Absent"), extra_paths=(str(installer_dir),))
    findings = detect.detect_machine(options)

    assert [finding.kind for finding in findings] == [
        "msi-product",
        "registry-value",
        "path",
        "appx-package",
        "appx-provisioned",
        "service",
    ]
    assert findings[0].detail == "Teams Machine-Wide Installer 1.5.0.30767"
    assert findings[1].value_name == "TeamsMachineInstaller"
    assert findings[2].target == str(installer_dir)
    assert all(finding.scope == detect.MACHINE_SCOPE for finding in findings)


def test_skip_appx_option(clean_machine) -> None:
    clean_machine["appx"].append({"Name": "MicrosoftTeams", "PackageFullName": "MicrosoftTeams_1_x64__x"})

    findings = detect.detect_machine(TeamsOptions(remove_appx=False))

    assert findings == []


def test_profile_leftovers_are_reported(clean_machine, tmp_path) -> None:
    mounted = _mounted(tmp_path)
    root = mounted.profile.path
    _touch(root / "AppData" / "Local" / "Microsoft" / "Teams" / "Update.exe")
    (root / "AppData" / "Roaming" / "Microsoft" / "Teams").mkdir(parents=True)
    _touch(root / "Desktop" / "Microsoft Teams.lnk")
    clean_machine["keys"].add("HKU\\EJ_ALICE\\SOFTWARE\\MICROSOFT\\OFFICE\\TEAMS")
    clean_machine["values"].add(
        ("HKU\\EJ_ALICE\\SOFTWARE\\MICROSOFT\\WINDOWS\\CURRENTVERSION\\RUN", "COM.SQUIRREL.TEAMS.TEAMS")
    )

    findings = detect.detect_profile(mounted)

    assert [(finding.kind, pathlib.Path(finding.target).name) for finding in findings[:4]] == [
        ("user-uninstaller", "Update.exe"),
        ("path", "Teams"),
        ("path", "Teams"),
        ("shortcut", "Microsoft Teams.lnk"),
    ]
    assert findings[4] == Finding(
        "registry-value",
        r"HKU\EJ_alice\Software\Microsoft\Windows\CurrentVersion\Run",
        "alice",
        value_name="com.squirrel.Teams.Teams",
    )
    assert findings[5] == Finding("registry-key", r"HKU\EJ_alice\Software\Microsoft\Office\Teams", "alice")
    assert all(finding.scope == "alice" for finding in findings)


def test_unmounted_profile_still_gets_filesystem_checks(clean_machine, tmp_path) -> None:
    mounted = _mounted(tmp_path, "bob", handle=None)
    _touch(mounted.profile.path / "AppData" / "Local" / "SquirrelTemp" / "x.log")

    report = detect.detect(TeamsOptions(), [mounted])

    assert report.skipped_profiles == {"bob": "hive file missing"}
    assert [finding.kind for finding in report.findings] == ["path"]
    assert report.summary() == "Classic Teams leftovers detected: 1 (path=1)"


def test_report_serialisation() -> None:
    report = detect.DetectionReport(
        findings=[Finding("registry-value", r"HKLM\Run", value_name="TeamsMachineInstaller")],
        profiles=["alice"],
    )

    payload = report.to_dict()

    assert payload["compliant"] is False
    assert payload["findings"] == [
        {"kind": "registry-value", "target": r"HKLM\Run", "scope": "machine", "value_name": "TeamsMachineInstaller"}
    ]
    assert report.findings[0].describe() == r"registry-value HKLM\Run\TeamsMachineInstaller [machine]"


def test_run_detection_mounts_logs_and_returns(clean_machine, tmp_path, monkeypatch) -> None:
    logging_ext.setup_logging(tmp_path / "logs")
    mounted = _mounted(tmp_path)
    _touch(mounted.profile.path / "Desktop" / "Microsoft Teams.lnk")
    seen_include: list[bool] = []

    class _Session:
        def __init__(self, include_default: bool) -> None:
            seen_include.append(include_default)

        def __enter__(self):
            return [mounted]

        def __exit__(self, *exc_info):
            return False

    monkeypatch.setattr(
        detect.user_hives,
        "mounted_user_hives",
        lambda include_default=False: _Session(include_default),
    )

    report = detect.run_detection(TeamsOptions(include_default_profile=False))

    assert seen_include == [False]
    assert report.compliant is False
    machine_logger = logging.getLogger(logging_ext.MACHINE_LOGGER_NAME)
    for handler in machine_logger.handlers:
        handler.flush()
    events = [
        json.loads(line)
        for line in (tmp_path / "logs" / logging_ext.MACHINE_LOG_FILENAME).read_text(encoding="utf-8").splitlines()
    ]
    result = next(entry for entry in events if entry.get("event") == "teams_detect_result")
    assert result["report"]["findings"][0]["kind"] == "shortcut"


def test_failed_appx_query_keeps_device_non_compliant(tmp_path, monkeypatch) -> None:
    def fake_powershell(script, *, event, **kwargs):
        return exec_utils.CommandResult(
            command=["powershell.exe"],
            returncode=1,
            stdout="",
            stderr="",
            duration=120.0,
            timed_out=True,
            error="timeout",
        )

    monkeypatch.setattr(detect.msi_uninstall, "find_installed_products", lambda: [])
    monkeypatch.setattr(detect.registry_tools, "value_exists", lambda handle, name: False)
    monkeypatch.setattr(detect.registry_tools, "key_exists", lambda handle: False)
    monkeypatch.setattr(detect.appx_uninstall.exec_utils, "run_powershell", fake_powershell)

    report = detect.detect(TeamsOptions(), [_mounted(tmp_path)])

    assert report.findings == []
    assert report.errors == [
        "AppX package query failed: timed out",
        "Provisioned package query failed: timed out",
    ]
    assert report.compliant is False
    assert report.summary() == "Classic Teams not detected; 2 check(s) failed, result incomplete"
    assert report.to_dict()["errors"] == report.errors


def test_unknown_service_state_is_a_detection_error(clean_machine) -> None:
    clean_machine["unknown_services"].add("TeamsUpdater")
    errors: list[str] = []

    findings = detect.detect_machine(TeamsOptions(services=("TeamsUpdater",)), errors)

    assert findings == []
    assert errors == ["Service TeamsUpdater query failed: status unknown"]
