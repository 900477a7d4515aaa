"""!
@brief Classic Teams remediation tests.
@details Detection is scripted per call so each test controls what the first
pass finds and what the verification pass still sees. Removal primitives are
replaced with recorders; filesystem removal runs for real under ``tmp_path``.
"""

from __future__ import annotations

import pathlib
import sys
from collections.abc import Sequence
from typing import Dict, List

import pytest

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from endpoint_janitor import constants, exec_utils, msi_uninstall, remediate  # noqa: E402
from endpoint_janitor.detect import DetectionReport, Finding, TeamsOptions  # noqa: E402

USER_RUN_KEY = r"HKU\EJ_alice\Software\Microsoft\Windows\CurrentVersion\Run"
USER_TEAMS_KEY = r"HKU\EJ_alice\Software\Microsoft\Office\Teams"
PRODUCT_CODE = constants.TEAMS_MACHINE_INSTALLER_CODES[0]


def _command_result(command: Sequence[str], *, returncode: int = 0, skipped: bool = False) -> exec_utils.CommandResult:
    return exec_utils.CommandResult(
        command=[str(part) for part in command],
        returncode=returncode,
        stdout="",
        stderr="",
        duration=0.0,
        skipped=skipped,
    )


class _Session:
    def __enter__(self):
        return []

    def __exit__(self, *exc_info):
        return False


@pytest.fixture
def recorder(monkeypatch, tmp_path) -> Dict[str, List[object]]:
    """!
    @brief Replace every removal primitive with a recorder.
    """

    calls: Dict[str, List[object]] = {
        "taskkill": [],
        "uninstaller": [],
        "msi": [],
        "appx": [],
        "provisioned": [],
        "services": [],
        "delete_value": [],
        "delete_key": [],
        "export": [],
    }

    monkeypatch.setattr(remediate.user_hives, "mounted_user_hives", lambda include_default=False: _Session())
    monkeypatch.setattr(remediate.logging_ext, "get_log_directory", lambda: tmp_path / "logs")

    def fake_terminate(names, *, dry_run=False, **kwargs):
        calls["taskkill"].append((list(names), dry_run))
        return {"terminated": list(names), "not_running": [], "failed": []}

    def fake_run(command, *, event, dry_run=False, **kwargs):
        calls["uninstaller"].append((list(command), event, dry_run))
        return _command_result(command, returncode=1, skipped=dry_run)

    def fake_msi(product, *, dry_run=False, **kwargs):
        calls["msi"].append((product.product_code, dry_run))
        return msi_uninstall.MsiResult(product, 0 if dry_run else 3010, 1, skipped=dry_run)

    def fake_export(handles, destination, *, dry_run=False):
        calls["export"].append((list(handles), pathlib.Path(destination), dry_run))
        return {"destination": str(destination), "performed": not dry_run, "artifacts": list(handles), "errors": []}

    monkeypatch.setattr(remediate.processes, "terminate_processes", fake_terminate)
    monkeypatch.setattr(remediate.exec_utils, "run_command", fake_run)
    monkeypatch.setattr(remediate.msi_uninstall, "uninstall_product", fake_msi)
    monkeypatch.setattr(
        remediate.appx_uninstall,
        "remove_package",
        lambda name, *, dry_run=False: calls["appx"].append(name) or True,
    )
    monkeypatch.setattr(
        remediate.appx_uninstall,
        "remove_provisioned_package",
        lambda name, *, dry_run=False: calls["provisioned"].append(name) or True,
    )
    monkeypatch.setattr(
        remediate.tasks_services,
        "stop_services",
        lambda names, *, dry_run=False, **kwargs: {"reboot_required": False, "services_requiring_reboot": []},
    )
    monkeypatch.setattr(
        remediate.tasks_services,
        "delete_services",
        lambda names, *, dry_run=False: calls["services"].extend(names) or {"deleted": list(names), "failed": []},
    )
    monkeypatch.setattr(remediate.registry_tools, "export_keys", fake_export)
    monkeypatch.setattr(remediate.registry_tools, "value_exists", lambda handle, name: True)
    monkeypatch.setattr(remediate.registry_tools, "key_exists", lambda handle: True)
    monkeypatch.setattr(
        remediate.registry_tools,
        "delete_value",
        lambda handle, name, *, dry_run=False: calls["delete_value"].append((handle, name, dry_run)) or True,
    )
    monkeypatch.setattr(
        remediate.registry_tools,
        "delete_key",
        lambda handle, *, dry_run=False: calls["delete_key"].append((handle, dry_run)) or True,
    )
    return calls


def _script_detection(monkeypatch, *reports: DetectionReport) -> List[DetectionReport]:
    queue = list(reports)
    monkeypatch.setattr(remediate.detect, "detect", lambda options, hives: queue.pop(0))
    return queue


def _leftovers(tmp_path: pathlib.Path) -> DetectionReport:
    profile = tmp_path / "Users" / "alice"
    teams_dir = profile / "AppData" / "Local" / "Microsoft" / "Teams"
    teams_dir.mkdir(parents=True)
    update = teams_dir / "Update.exe"
    update.write_bytes(b"MZ")
    shortcut = profile / "Desktop" / "Microsoft Teams.lnk"
    shortcut.parent.mkdir(parents=True)
    shortcut.write_bytes(b"L")

    return DetectionReport(
        findings=[
            Finding("msi-product", PRODUCT_CODE, detail="Teams Machine-Wide Installer"),
            Finding("appx-package", "MicrosoftTeams_1_x64__x"),
            Finding("appx-provisioned", "MicrosoftTeams_1_neutral"),
            Finding("user-uninstaller", str(update), "alice"),
            Finding("path", str(teams_dir), "alice"),
            Finding("shortcut", str(shortcut), "alice"),
            Finding("registry-key", USER_TEAMS_KEY, "alice"),
            Finding("registry-value", USER_RUN_KEY, "alice", value_name="com.squirrel.Teams.Teams"),
        ],
        profiles=["alice"],
    )


def test_remediate_removes_everything_and_verifies(recorder, monkeypatch, tmp_path) -> None:
    detected = _leftovers(tmp_path)
    queue = _script_detection(monkeypatch, detected, DetectionReport(profiles=["alice"]))

    report = remediate.remediate(TeamsOptions(), is_admin=True)

    assert queue == []
    assert report.succeeded is True
    assert report.reboot_required is True
    assert report.failed_actions == []
    assert recorder["taskkill"] == [(list(constants.TEAMS_PROCESSES), False)]
    assert recorder["uninstaller"][0][0][-2:] == list(constants.USER_UNINSTALLER_ARGS)
    assert recorder["msi"] == [(PRODUCT_CODE, False)]
    assert recorder["appx"] == ["MicrosoftTeams_1_x64__x"]
    assert recorder["provisioned"] == ["MicrosoftTeams_1_neutral"]
    assert recorder["delete_value"] == [(USER_RUN_KEY, "com.squirrel.Teams.Teams", False)]
    assert recorder["delete_key"] == [(USER_TEAMS_KEY, False)]
    assert recorder["export"][0][1] == tmp_path / "logs" / "registry-backups"
    assert not (tmp_path / "Users" / "alice" / "AppData" / "Local" / "Microsoft" / "Teams").exists()
    assert not (tmp_path / "Users" / "alice" / "Desktop" / "Microsoft Teams.lnk").exists()
    assert report.summary() == "Removed 8/8 classic Teams artefacts; reboot required"


def test_remediate_reports_remaining_leftovers(recorder, monkeypatch, tmp_path) -> None:
    detected = _leftovers(tmp_path)
    remaining = DetectionReport(findings=[Finding("registry-key", USER_TEAMS_KEY, "alice")])
    _script_detection(monkeypatch, detected, remaining)

    report = remediate.remediate(TeamsOptions(), is_admin=True)

    assert report.succeeded is False
    assert report.summary().endswith("; 1 remain; reboot required")
    assert report.to_dict()["remaining"]["compliant"] is False


def test_remediate_dry_run_changes_nothing(recorder, monkeypatch, tmp_path) -> None:
    detected = _leftovers(tmp_path)
    queue = _script_detection(monkeypatch, detected)

    report = remediate.remediate(TeamsOptions(backup=str(tmp_path / "bk")), dry_run=True, is_admin=False)

    assert queue == []
    assert report.remaining is None
    assert report.succeeded is True
    assert report.reboot_required is False
    assert all(dry_run for _, dry_run in recorder["delete_key"])
    assert recorder["export"][0][1:] == (tmp_path / "bk", True)
    assert (tmp_path / "Users" / "alice" / "Desktop" / "Microsoft Teams.lnk").exists()
    assert report.summary() == "Dry-run: would remove 8/8 classic Teams artefacts"


def test_remediate_requires_admin_for_live_runs(recorder, monkeypatch) -> None:
    queue = _script_detection(monkeypatch, DetectionReport())

    with pytest.raises(PermissionError):
        remediate.remediate(TeamsOptions(), is_admin=False)

    assert queue != []


def test_compliant_device_is_left_alone(recorder, monkeypatch) -> None:
    _script_detection(monkeypatch, DetectionReport(profiles=["alice"]))

    report = remediate.remediate(TeamsOptions(), is_admin=True)

    assert report.succeeded is True
    assert report.actions == []
    assert recorder["taskkill"] == []
    assert report.summary() == "Classic Teams not detected; nothing to remediate"



def test_incomplete_detection_is_not_reported_as_success(recorder, monkeypatch) -> None:
    _script_detection(monkeypatch, DetectionReport(errors=["AppX package query failed: timed out"]))

    report = remediate.remediate(TeamsOptions(), is_admin=True)

    assert report.actions == []
    assert report.succeeded is False
    assert report.summary() == "Classic Teams detection incomplete; nothing remediated"

def test_preflight_blocks_targets_outside_allow_list(recorder, monkeypatch) -> None:
    detected = DetectionReport(findings=[Finding("path", r"C:\Users\alice\Documents", "alice")])
    _script_detection(monkeypatch, detected)

    with pytest.raises(ValueError):
        remediate.remediate(TeamsOptions(), is_admin=True)

    assert recorder["taskkill"] == []


def test_failed_actions_do_not_stop_later_steps(recorder, monkeypatch, tmp_path) -> None:
    detected = _leftovers(tmp_path)
    _script_detection(monkeypatch, detected, DetectionReport())
    monkeypatch.setattr(remediate.appx_uninstall, "remove_package", lambda name, *, dry_run=False: False)

    report = remediate.remediate(TeamsOptions(), is_admin=True)

    assert [action.kind for action in report.failed_actions] == ["appx-package"]
    assert recorder["delete_key"]
    assert report.succeeded is False


def test_registry_targets_already_gone_count_as_done(recorder, monkeypatch, tmp_path) -> None:
    detected = DetectionReport(findings=[Finding("registry-key", USER_TEAMS_KEY, "alice")])
    _script_detection(monkeypatch, detected, DetectionReport())
    monkeypatch.setattr(remediate.registry_tools, "key_exists", lambda handle: False)

    report = remediate.remediate(TeamsOptions(), is_admin=True)

    assert recorder["delete_key"] == []
    assert report.actions[0].detail == "already absent"
    assert report.succeeded is True


def test_remove_machine_wide_installer_only_touches_msi_and_run_values(recorder, monkeypatch, tmp_path) -> None:
    product = msi_uninstall.MsiProduct(PRODUCT_CODE, "Teams Machine-Wide Installer", "1.5", "HKLM\\x")
    state = {"msi": True, "run": True}

    monkeypatch.setattr(
        remediate.msi_uninstall,
        "find_installed_products",
        lambda: [product] if state["msi"] else [],
    )

    def value_exists(handle, name):
        return state["run"] and handle == constants.MACHINE_RUN_VALUES[0][0]

    def fake_msi(product, *, dry_run=False, **kwargs):
        state["msi"] = False
        return msi_uninstall.MsiResult(product, 0, 1)

    def fake_delete_value(handle, name, *, dry_run=False):
        recorder["delete_value"].append((handle, name, dry_run))
        state["run"] = False
        return True

    monkeypatch.setattr(remediate.registry_tools, "value_exists", value_exists)
    monkeypatch.setattr(remediate.registry_tools, "delete_value", fake_delete_value)
    monkeypatch.setattr(remediate.msi_uninstall, "uninstall_product", fake_msi)

    report = remediate.remove_machine_wide_installer(TeamsOptions(), is_admin=True)

    assert [finding.kind for finding in report.detected.findings] == ["msi-product", "registry-value"]
    assert report.succeeded is True
    assert report.remaining is not None and report.remaining.compliant
    assert recorder["taskkill"] == []
    assert recorder["uninstaller"] == []
    assert recorder["delete_value"] == [(constants.MACHINE_RUN_VALUES[0][0], "TeamsMachineInstaller", False)]
