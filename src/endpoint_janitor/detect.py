"""!
@brief Detection of leftover classic Microsoft Teams artefacts.
@details Walks the fixed list of locations in :mod:`constants` at machine scope
and inside every user profile, and returns a :class:`DetectionReport` of
:class:`Finding` records. The same findings drive remediation, so anything
reported here is exactly what :mod:`remediate` will try to remove.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Tuple

from . import (
    appx_uninstall,
    constants,
    fs_tools,
    logging_ext,
    msi_uninstall,
    registry_tools,
    tasks_services,
    user_hives,
)

MACHINE_SCOPE = "machine"

FINDING_KINDS = (
    "msi-product",
    "user-uninstaller",
    "appx-package",
    "appx-provisioned",
    "service",
    "path",
    "shortcut",
    "registry-value",
    "registry-key",
)
"""!
@brief Every finding kind, in the order remediation handles them.
"""


@dataclass(frozen=True)
class TeamsOptions:
    """!
    @brief Knobs for classic Teams detection and remediation.
    @details ``extra_paths`` are machine-level path templates (environment
    variables allowed) that are treated like the built-in machine paths.
    ``services`` is empty by default because classic Teams registers none.
    """

    include_default_profile: bool = True
    remove_appx: bool = True
    services: Tuple[str, ...] = ()
    extra_paths: Tuple[str, ...] = ()
    backup: str | None = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "include_default_profile": self.include_default_profile,
            "remove_appx": self.remove_appx,
            "services": list(self.services),
            "extra_paths": list(self.extra_paths),
            "backup": self.backup,
        }


@dataclass(frozen=True)
class Finding:
    """!
    @brief One leftover artefact.
    @details ``target`` is a registry handle, a filesystem path, an MSI
    product code, an AppX package full name or a service name depending on
    ``kind``. ``scope`` is ``"machine"`` or the owning profile name.
    """

    kind: str
    target: str
    scope: str = MACHINE_SCOPE
    value_name: str | None = None
    detail: str = ""

    def describe(self) -> str:
        if self.value_name:
            return f"{self.kind} {self.target}\\{self.value_name} [{self.scope}]"
        return f"{self.kind} {self.target} [{self.scope}]"

    def to_dict(self) -> Dict[str, object]:
        payload: Dict[str, object] = {
            "kind": self.kind,
            "target": self.target,
            "scope": self.scope,
        }
        if self.value_name is not None:
            payload["value_name"] = self.value_name
        if self.detail:
            payload["detail"] = self.detail
        return payload


@dataclass
class DetectionReport:
    """!
    @brief Findings plus the checks that could not be completed.
    @details A failed query means absence is unproven, so ``errors`` keeps the
    device non-compliant even when ``findings`` is empty.
    """

    findings: List[Finding] = field(default_factory=list)
    profiles: List[str] = field(default_factory=list)
    skipped_profiles: Dict[str, str] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)

    @property
    def compliant(self) -> bool:
        return not self.findings and not self.errors

    def by_kind(self, kind: str) -> List[Finding]:
        return [finding for finding in self.findings if finding.kind == kind]

    def summary(self) -> str:
        if self.findings:
            counts: Dict[str, int] = {}
            for finding in self.findings:
                counts[finding.kind] = counts.get(finding.kind, 0) + 1
            parts = ", ".join(f"{kind}={counts[kind]}" for kind in FINDING_KINDS if kind in counts)
            text = f"Classic Teams leftovers detected: {len(self.findings)} ({parts})"
        else:
            text = "Classic Teams not detected"
        if self.errors:
            text += f"; {len(self.errors)} check(s) failed, result incomplete"
        return text

    def to_dict(self) -> Dict[str, object]:
        return {
            "compliant": self.compliant,
            "findings": [finding.to_dict() for finding in self.findings],
            "profiles": list(self.profiles),
            "skipped_profiles": dict(self.skipped_profiles),
            "errors": list(self.errors),
        }


def _path_findings(paths: Iterable[Path], *, kind: str, scope: str) -> List[Finding]:
    return [Finding(kind, str(path), scope) for path in fs_tools.existing_paths(paths)]


def _registry_findings(
    hive_root: str,
    scope: str,
    keys: Iterable[str],
    run_values: Iterable[Tuple[str, str]],
) -> List[Finding]:
    findings: List[Finding] = []
    for key, value_name in run_values:
        handle = registry_tools.join_handle(hive_root, key)
        if registry_tools.value_exists(handle, value_name):
            findings.append(Finding("registry-value", handle, scope, value_name=value_name))
    for key in keys:
        handle = registry_tools.join_handle(hive_root, key)
        if registry_tools.key_exists(handle):
            findings.append(Finding("registry-key", handle, scope))
    return findings


def detect_machine(options: TeamsOptions, errors: List[str] | None = None) -> List[Finding]:
    """!
    @brief Machine-scope checks: MSI, autostart values, folders, shortcuts,
    AppX and services.
    @param errors Receives one message per query that could not complete.
    """

    findings: List[Finding] = []
    if errors is None:
        errors = []

    for product in msi_uninstall.find_installed_products():
        findings.append(
            Finding(
                "msi-product",
                product.product_code,
                detail=f"{product.display_name} {product.version}".strip(),
            )
        )

    for handle, value_name in constants.MACHINE_RUN_VALUES:
        if registry_tools.value_exists(handle, value_name):
            findings.append(Finding("registry-value", handle, value_name=value_name))

    machine_paths = [fs_tools.expand_machine_path(item) for item in constants.MACHINE_PATHS]
    machine_paths.extend(fs_tools.expand_machine_path(item) for item in options.extra_paths)
    findings.extend(_path_findings(machine_paths, kind="path", scope=MACHINE_SCOPE))
    findings.extend(
        _path_findings(
            (fs_tools.expand_machine_path(item) for item in constants.MACHINE_SHORTCUTS),
            kind="shortcut",
            scope=MACHINE_SCOPE,
        )
    )

    if options.remove_appx:
        try:
            for package in appx_uninstall.find_packages(constants.TEAMS_APPX_PACKAGES):
                findings.append(
                    Finding("appx-package", str(package["PackageFullName"]), detail=str(package.get("Name", "")))
                )
        except appx_uninstall.AppxQueryError as exc:
            errors.append(str(exc))
        try:
            for package in appx_uninstall.find_provisioned_packages(constants.TEAMS_APPX_PACKAGES):
                findings.append(
                    Finding(
                        "appx-provisioned",
                        str(package["PackageName"]),
                        detail=str(package.get("DisplayName", "")),
                    )
                )
        except appx_uninstall.AppxQueryError as exc:
            errors.append(str(exc))

    for service in options.services:
        status = tasks_services.query_service_status(service)
        if status == "UNKNOWN":
            errors.append(f"Service {service} query failed: status unknown")
        elif status != "MISSING":
            findings.append(Finding("service", service))

    return findings


def detect_profile(mounted: user_hives.MountedHive) -> List[Finding]:
    """!
    @brief Per-profile checks.
    @details Filesystem checks always run; registry checks need the hive to be
    mounted.
    """

    profile = mounted.profile
    scope = profile.name
    findings: List[Finding] = []

    uninstaller = fs_tools.profile_paths(profile.path, [constants.USER_UNINSTALLER])
    findings.extend(_path_findings(uninstaller, kind="user-uninstaller", scope=scope))
    findings.extend(
        _path_findings(fs_tools.profile_paths(profile.path, constants.USER_PATHS), kind="path", scope=scope)
    )
    findings.extend(
        _path_findings(
            fs_tools.profile_paths(profile.path, constants.USER_SHORTCUTS), kind="shortcut", scope=scope
        )
    )

    if mounted.root_handle is not None:
        findings.extend(
            _registry_findings(
                mounted.root_handle,
                scope,
                constants.USER_REGISTRY_KEYS,
                constants.USER_RUN_VALUES,
            )
        )

    return findings


def detect(options: TeamsOptions, hives: Iterable[user_hives.MountedHive]) -> DetectionReport:
    """!
    @brief Combine machine and per-profile findings for already mounted hives.
    """

    report = DetectionReport()
    report.findings.extend(detect_machine(options, report.errors))
    for mounted in hives:
        report.profiles.append(mounted.profile.name)
        if not mounted.available:
            report.skipped_profiles[mounted.profile.name] = mounted.error or "hive unavailable"
        report.findings.extend(detect_profile(mounted))
    return report


def log_report(report: DetectionReport, *, event: str = "teams_detect_result") -> None:
    human_logger = logging_ext.get_human_logger()
    machine_logger = logging_ext.get_machine_logger()

    human_logger.info(report.summary())
    for finding in report.findings:
        human_logger.info("  %s", finding.describe())
    for name, reason in report.skipped_profiles.items():
        human_logger.warning("Registry checks skipped for profile %s: %s", name, reason)
    for message in report.errors:
        human_logger.error("Detection check failed: %s", message)
    machine_logger.info(event, extra=logging_ext.event_extra(event, report=report.to_dict()))


def run_detection(options: TeamsOptions) -> DetectionReport:
    """!
    @brief Mount every profile hive, detect, unmount, and log the outcome.
    """

    with user_hives.mounted_user_hives(include_default=options.include_default_profile) as hives:
        report = detect(options, hives)
    log_report(report)
    return report
