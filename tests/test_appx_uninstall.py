"""!
@brief AppX discovery and removal tests.
@details PowerShell is never launched; :func:`exec_utils.run_powershell` is
replaced with canned ``ConvertTo-Json`` output.
"""

from __future__ import annotations

import json
import pathlib
import sys

import pytest

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from endpoint_janitor import appx_uninstall, exec_utils  # noqa: E402


def _ps_result(stdout: str = "", *, returncode: int = 0, skipped: bool = False, stderr: str = "") -> exec_utils.CommandResult:
    return exec_utils.CommandResult(
        command=["powershell.exe"],
        returncode=returncode,
        stdout=stdout,
        stderr=stderr,
        duration=0.0,
        skipped=skipped,
    )


def test_find_packages_matches_exact_names_only(monkeypatch) -> None:
    rows = [
        {"Name": "MicrosoftTeams", "PackageFullName": "MicrosoftTeams_23.1_x64__8wekyb3d8bbwe", "Version": "23.1"},
        {"Name": "MicrosoftTeams", "PackageFullName": "MicrosoftTeams_23.1_x64__8wekyb3d8bbwe", "Version": "23.1"},
        {"Name": "MSTeams", "PackageFullName": "MSTeams_24.1_x64__8wekyb3d8bbwe", "Version": "24.1"},
    ]
    scripts: list[str] = []

    def fake_run(script, *, event, **kwargs):
        scripts.append(script)
        assert event == "appx_query"
        return _ps_result(json.dumps(rows))

    monkeypatch.setattr(appx_uninstall.exec_utils, "run_powershell", fake_run)

    packages = appx_uninstall.find_packages(["MicrosoftTeams"])

    assert [row["PackageFullName"] for row in packages] == ["MicrosoftTeams_23.1_x64__8wekyb3d8bbwe"]
    assert "@('MicrosoftTeams') -contains $_.Name" in scripts[0]
    assert "-AllUsers" in scripts[0]


def test_find_packages_handles_single_object_and_empty_output(monkeypatch) -> None:
    single = {"Name": "MicrosoftTeams", "PackageFullName": "MicrosoftTeams_1_x64__x"}
    monkeypatch.setattr(
        appx_uninstall.exec_utils,
        "run_powershell",
        lambda script, **kwargs: _ps_result(json.dumps(single)),
    )
    assert appx_uninstall.find_packages(["MicrosoftTeams"]) == [single]

    monkeypatch.setattr(
        appx_uninstall.exec_utils,
        "run_powershell",
        lambda script, **kwargs: _ps_result("not json"),
    )
    assert appx_uninstall.find_packages(["MicrosoftTeams"]) == []
    assert appx_uninstall.find_packages([]) == []


def test_failed_queries_raise_instead_of_reporting_absence(monkeypatch) -> None:
    monkeypatch.setattr(
        appx_uninstall.exec_utils,
        "run_powershell",
        lambda script, **kwargs: _ps_result("", returncode=1, stderr="Access is denied."),
    )
    with pytest.raises(appx_uninstall.AppxQueryError, match="Access is denied"):
        appx_uninstall.find_packages(["MicrosoftTeams"])

    timed_out = exec_utils.CommandResult(
        command=["powershell.exe"],
        returncode=1,
        stdout="",
        stderr="",
        duration=120.0,
        timed_out=True,
        error="timeout",
    )
    monkeypatch.setattr(appx_uninstall.exec_utils, "run_powershell", lambda script, **kwargs: timed_out)
    with pytest.raises(appx_uninstall.AppxQueryError, match="timed out"):
        appx_uninstall.find_provisioned_packages(["MicrosoftTeams"])


def test_find_provisioned_packages(monkeypatch) -> None:
    rows = [
        {"DisplayName": "MicrosoftTeams", "PackageName": "MicrosoftTeams_23.1_neutral_~_8wekyb3d8bbwe"},
        {"DisplayName": "MSTeams", "PackageName": "MSTeams_24.1_x64__8wekyb3d8bbwe"},
    ]
    monkeypatch.setattr(
        appx_uninstall.exec_utils,
        "run_powershell",
        lambda script, **kwargs: _ps_result(json.dumps(rows)),
    )

    packages = appx_uninstall.find_provisioned_packages(["MicrosoftTeams"])

    assert [row["PackageName"] for row in packages] == ["MicrosoftTeams_23.1_neutral_~_8wekyb3d8bbwe"]


def test_remove_package_quotes_name_and_reports_failure(monkeypatch) -> None:
    scripts: list[tuple[str, str, bool]] = []

    def fake_run(script, *, event, dry_run=False, **kwargs):
        scripts.append((script, event, dry_run))
        return _ps_result(returncode=1, stderr="Deployment failed")

    monkeypatch.setattr(appx_uninstall.exec_utils, "run_powershell", fake_run)

    assert appx_uninstall.remove_package("MicrosoftTeams_23.1_x64__8wekyb3d8bbwe") is False
    assert scripts[0][0].startswith("Remove-AppxPackage -Package 'MicrosoftTeams_23.1_x64__8wekyb3d8bbwe'")
    assert scripts[0][1] == "appx_remove"


def test_remove_provisioned_package_dry_run(monkeypatch) -> None:
    monkeypatch.setattr(
        appx_uninstall.exec_utils,
        "run_powershell",
        lambda script, *, dry_run=False, **kwargs: _ps_result(skipped=dry_run),
    )

    assert appx_uninstall.remove_provisioned_package("MicrosoftTeams_x", dry_run=True) is True
