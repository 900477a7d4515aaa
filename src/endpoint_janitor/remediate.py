"""!
@brief Removal of leftover classic Microsoft Teams artefacts.
@details Remediation runs inside a single hive-mount session: it detects,
removes every finding in dependency order (processes, uninstallers, MSI, AppX,
services, files, registry), then detects again to verify. Individual failures
are recorded and never stop later steps; the final re-detection decides
whether the device is clean.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List

from . import (
    appx_uninstall,
    constants,
    detect,
    elevation,
    exec_utils,
    fs_tools,
    logging_ext,
    msi_uninstall,
    processes,
    registry_tools,
    safety,
    tasks_services,
    user_hives,
)
from .detect import DetectionReport, Finding, TeamsOptions

USER_UNINSTALL_TIMEOUT = 300


@dataclass
class ActionResult:
    kind: str
    target: str
    scope: str
    success: bool
    detail: str = ""
    value_name: str | None = None

    def to_dict(self) -> Dict[str, object]:
        payload: Dict[str, object] = {
            "kind": self.kind,
            "target": self.target,
            "scope": self.scope,
            "success": self.success,
        }
        if self.value_name is not None:
            payload["value_name"] = self.value_name
        if self.detail:
            payload["detail"] = self.detail
        return payload


@dataclass
class RemediationReport:
    """!
    @brief Outcome of a remediation run.
    @details ``remaining`` is ``None`` for dry-runs, where nothing changed and
    re-detection would only repeat ``detected``.
    """

    detected: DetectionReport
    dry_run: bool = False
    actions: List[ActionResult] = field(default_factory=list)
    remaining: DetectionReport | None = None
    backup: Dict[str, Any] = field(default_factory=dict)
    reboot_required: bool = False

    @property
    def failed_actions(self) -> List[ActionResult]:
        return [action for action in self.actions if not action.success]

    @property
    def succeeded(self) -> bool:
        if self.failed_actions:
            return False
        if self.remaining is None:
            return not self.detected.errors
        return self.remaining.compliant

    def summary(self) -> str:
        if not self.detected.findings:
            if self.detected.errors:
                return "Classic Teams detection incomplete; nothing remediated"
            return "Classic Teams not detected; nothing to remediate"
        prefix = "Dry-run: would remove" if self.dry_run else "Removed"
        done = sum(1 for action in self.actions if action.success)
        text = f"{prefix} {done}/{len(self.actions)} classic Teams artefacts"
        if self.remaining is not None and self.remaining.findings:
            text += f"; {len(self.remaining.findings)} remain"
        if self.remaining is not None and self.remaining.errors:
            text += "; verification incomplete"
        if self.reboot_required:
            text += "; reboot required"
        return text

    def to_dict(self) -> Dict[str, object]:
        return {
            "dry_run": self.dry_run,
            "succeeded": self.succeeded,
            "reboot_required": self.reboot_required,
            "detected": self.detected.to_dict(),
            "actions": [action.to_dict() for action in self.actions],
            "remaining": self.remaining.to_dict() if self.remaining is not None else None,
            "backup": dict(self.backup),
        }


def _action(finding: Finding, success: bool, detail: str = "") -> ActionResult:
    return ActionResult(
        kind=finding.kind,
        target=finding.target,
        scope=finding.scope,
        success=success,
        detail=detail,
        value_name=finding.value_name,
    )


def _extra_fragments(options: TeamsOptions) -> List[str]:
    return [str(fs_tools.expand_machine_path(item)) for item in options.extra_paths]


def preflight(findings: Iterable[Finding], options: TeamsOptions) -> None:
    """!
    @brief Validate every deletion target against the allow-lists.
    @raises ValueError On the first rejected target; nothing has been changed.
    """

    fragments = _extra_fragments(options)
    for finding in findings:
        if finding.kind in {"path", "shortcut", "user-uninstaller"}:
            safety.ensure_path_allowed(finding.target, extra_fragments=fragments)
        elif finding.kind == "registry-key":
            safety.ensure_registry_target_allowed(finding.target)
        elif finding.kind == "registry-value":
            safety.ensure_registry_target_allowed(finding.target, finding.value_name)


def _resolve_backup_root(options: TeamsOptions) -> Path | None:
    if options.backup:
        return Path(options.backup)
    logdir = logging_ext.get_log_directory()
    return logdir / "registry-backups" if logdir is not None else None


# ---------------------------------------------------------------------------
# Individual steps
# ---------------------------------------------------------------------------


def _run_user_uninstallers(findings: List[Finding], report: RemediationReport) -> None:
    for finding in findings:
        result = exec_utils.run_command(
            [finding.target, *constants.USER_UNINSTALLER_ARGS],
            event="teams_user_uninstall",
            timeout=USER_UNINSTALL_TIMEOUT,
            dry_run=report.dry_run,
            human_message=f"Running classic Teams uninstaller for {finding.scope}",
            extra={"profile": finding.scope},
        )
        # Update.exe often exits non-zero after a partial uninstall; the
        # folder removal that follows finishes the job, so only launch
        # failures count against the action.
        report.actions.append(_action(finding, result.skipped or not result.error, f"exit {result.returncode}"))


def _uninstall_msi(findings: List[Finding], report: RemediationReport) -> None:
    log_directory = logging_ext.get_log_directory()
    for finding in findings:
        product = msi_uninstall.MsiProduct(
            product_code=finding.target,
            display_name=finding.detail,
            version="",
            handle="",
        )
        outcome = msi_uninstall.uninstall_product(
            product,
            dry_run=report.dry_run,
            log_directory=log_directory,
        )
        report.reboot_required = report.reboot_required or outcome.reboot_required
        report.actions.append(_action(finding, outcome.success, f"exit {outcome.returncode}"))


def _remove_appx(findings: List[Finding], report: RemediationReport) -> None:
    for finding in findings:
        if finding.kind == "appx-provisioned":
            removed = appx_uninstall.remove_provisioned_package(finding.target, dry_run=report.dry_run)
        else:
            removed = appx_uninstall.remove_package(finding.target, dry_run=report.dry_run)
        report.actions.append(_action(finding, removed))


def _remove_services(findings: List[Finding], report: RemediationReport) -> None:
    if not findings:
        return
    names = [finding.target for finding in findings]
    stopped = tasks_services.stop_services(names, dry_run=report.dry_run)
    report.reboot_required = report.reboot_required or bool(stopped["reboot_required"])
    outcome = tasks_services.delete_services(names, dry_run=report.dry_run)
    for finding in findings:
        report.actions.append(_action(finding, finding.target in outcome["deleted"]))


def _remove_paths(findings: List[Finding], report: RemediationReport) -> None:
    for finding in findings:
        outcome = fs_tools.remove_paths([finding.target], dry_run=report.dry_run)
        if outcome["failed"]:
            report.actions.append(_action(finding, False, "delete failed"))
        elif outcome["missing"]:
            report.actions.append(_action(finding, True, "already absent"))
        else:
            report.actions.append(_action(finding, True))


def _remove_registry(findings: List[Finding], options: TeamsOptions, report: RemediationReport) -> None:
    if not findings:
        return

    backup_root = _resolve_backup_root(options)
    if backup_root is not None:
        report.backup = registry_tools.export_keys(
            [finding.target for finding in findings],
            backup_root,
            dry_run=report.dry_run,
        )
    else:
        logging_ext.get_human_logger().warning(
            "No registry backup destination available; continuing without exports."
        )

    # Values first: deleting a key would take its values with it.
    for finding in sorted(findings, key=lambda item: item.kind != "registry-value"):
        if finding.kind == "registry-value":
            if not report.dry_run and not registry_tools.value_exists(finding.target, finding.value_name or ""):
                report.actions.append(_action(finding, True, "already absent"))
                continue
            removed = registry_tools.delete_value(
                finding.target, finding.value_name or "", dry_run=report.dry_run
            )
        else:
            if not report.dry_run and not registry_tools.key_exists(finding.target):
                report.actions.append(_action(finding, True, "already absent"))
                continue
            removed = registry_tools.delete_key(finding.target, dry_run=report.dry_run)
        report.actions.append(_action(finding, removed))


def execute(detected: DetectionReport, options: TeamsOptions, *, dry_run: bool = False) -> RemediationReport:
    """!
    @brief Remove everything in ``detected``.
    @raises ValueError When a target fails :func:`preflight`.
    """

    preflight(detected.findings, options)
    report = RemediationReport(detected=detected, dry_run=dry_run)

    stopped = processes.terminate_processes(constants.TEAMS_PROCESSES, dry_run=dry_run)
    if stopped["failed"]:
        logging_ext.get_human_logger().warning(
            "Could not stop %s; file removal may fail", ", ".join(stopped["failed"])
        )

    _run_user_uninstallers(detected.by_kind("user-uninstaller"), report)
    _uninstall_msi(detected.by_kind("msi-product"), report)
    _remove_appx(detected.by_kind("appx-package") + detected.by_kind("appx-provisioned"), report)
    _remove_services(detected.by_kind("service"), report)
    # Update.exe lives inside the per-user Teams folder, so the folder removal
    # takes care of a user-uninstaller that did not clean up after itself.
    _remove_paths(
        [finding for finding in detected.findings if finding.kind in {"path", "shortcut"}],
        report,
    )
    _remove_registry(
        detected.by_kind("registry-value") + detected.by_kind("registry-key"),
        options,
        report,
    )
    return report


def _log_result(report: RemediationReport, event: str) -> None:
    human_logger = logging_ext.get_human_logger()
    machine_logger = logging_ext.get_machine_logger()

    for action in report.failed_actions:
        human_logger.error("Failed: %s %s [%s] %s", action.kind, action.target, action.scope, action.detail)
    if report.remaining is not None:
        for finding in report.remaining.findings:
            human_logger.error("Still present: %s", finding.describe())
    (human_logger.info if report.succeeded else human_logger.error)(report.summary())
    machine_logger.info(event, extra=logging_ext.event_extra(event, report=report.to_dict()))


def remediate(
    options: TeamsOptions,
    *,
    dry_run: bool = False,
    is_admin: bool | None = None,
) -> RemediationReport:
    """!
    @brief Detect, remove and verify classic Teams leftovers.
    @raises PermissionError For a non-elevated run that is not a dry-run.
    @raises ValueError When a detected target fails the allow-list.
    """

    safety.require_admin(
        is_admin=elevation.is_admin() if is_admin is None else is_admin,
        dry_run=dry_run,
    )

    with user_hives.mounted_user_hives(include_default=options.include_default_profile) as hives:
        detected = detect.detect(options, hives)
        detect.log_report(detected)
        if not detected.findings:
            report = RemediationReport(detected=detected, dry_run=dry_run, remaining=detected)
        else:
            report = execute(detected, options, dry_run=dry_run)
            if not dry_run:
                report.remaining = detect.detect(options, hives)

    _log_result(report, "teams_remediate_result")
    return report


def _installer_findings() -> DetectionReport:
    report = DetectionReport()
    for product in msi_uninstall.find_installed_products():
        report.findings.append(
            Finding("msi-product", product.product_code, detail=product.display_name)
        )
    for handle, value_name in constants.MACHINE_RUN_VALUES:
        if registry_tools.value_exists(handle, value_name):
            report.findings.append(Finding("registry-value", handle, value_name=value_name))
    return report


def remove_machine_wide_installer(
    options: TeamsOptions,
    *,
    dry_run: bool = False,
    is_admin: bool | None = None,
) -> RemediationReport:
    """!
    @brief Remove only the Teams Machine-Wide Installer and its autostart value.
    @details Per-user installs are left alone; without the machine-wide
    installer they are no longer re-created at logon.
    """

    safety.require_admin(
        is_admin=elevation.is_admin() if is_admin is None else is_admin,
        dry_run=dry_run,
    )

    detected = _installer_findings()
    detect.log_report(detected, event="teams_installer_detect_result")
    report = RemediationReport(detected=detected, dry_run=dry_run)
    if detected.compliant:
        report.remaining = detected
    else:
        preflight(detected.findings, options)
        _uninstall_msi(detected.by_kind("msi-product"), report)
        _remove_registry(detected.by_kind("registry-value"), options, report)
        if not dry_run:
            report.remaining = _installer_findings()

    _log_result(report, "teams_installer_remove_result")
    return report
