"""!
@brief System-wide locale, display language and timezone enforcement.
@details Applies a :class:`LocaleProfile` in a fixed order: language features
through DISM, then the system locale, user language list, display language
override, culture and home location through the International PowerShell
module, then copies the result to the welcome screen and new-user template,
and finally sets the timezone with ``tzutil``. Under a management agent the
script runs as SYSTEM, which is why the copy-to-system step exists: without it
the per-user settings would only land on the SYSTEM account.

Steps are independent; a failing step is recorded and the remaining steps
still run. :func:`check` reads back the current values for drift reporting.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Sequence, Tuple

from . import constants, exec_utils, logging_ext

_LANGUAGE_TAG = re.compile(r"^[A-Za-z]{2,3}(-[A-Za-z0-9]{2,8}){0,3}$")
_FORBIDDEN_TZ_CHARS = re.compile(r"[\"'`\x00-\x1f]")

DISM_TIMEOUT = 3600
"""!
@brief Language feature downloads come from Windows Update and can be slow.
"""


@dataclass(frozen=True)
class LocaleProfile:
    """!
    @brief Desired regional configuration for the device.
    @details ``system_locale`` and ``culture`` default to ``language``.
    ``geo_id`` is the Windows GeoID for the home location (for example 242 for
    the United Kingdom); ``None`` leaves the home location untouched.
    """

    language: str = constants.DEFAULT_LANGUAGE
    timezone: str = constants.DEFAULT_TIMEZONE
    system_locale: str | None = None
    culture: str | None = None
    geo_id: int | None = None
    capabilities: Tuple[str, ...] = constants.LANGUAGE_CAPABILITY_FAMILIES
    copy_to_system: bool = True
    extra_languages: Tuple[str, ...] = ()

    @property
    def effective_system_locale(self) -> str:
        return self.system_locale or self.language

    @property
    def effective_culture(self) -> str:
        return self.culture or self.language

    def validate(self) -> None:
        """!
        @raises ValueError When a tag, timezone or GeoID is malformed.
        """

        for label, tag in (
            ("language", self.language),
            ("system_locale", self.effective_system_locale),
            ("culture", self.effective_culture),
            *(("extra_languages", extra) for extra in self.extra_languages),
        ):
            if not _LANGUAGE_TAG.match(str(tag)):
                raise ValueError(f"Invalid {label} tag: {tag!r}")
        if not self.timezone or not self.timezone.strip() or _FORBIDDEN_TZ_CHARS.search(self.timezone):
            raise ValueError(f"Invalid timezone identifier: {self.timezone!r}")
        if self.geo_id is not None and (isinstance(self.geo_id, bool) or int(self.geo_id) <= 0):
            raise ValueError(f"Invalid geo_id: {self.geo_id!r}")
        for family in self.capabilities:
            if not family.startswith("Language."):
                raise ValueError(f"Unknown language capability family: {family!r}")

    def to_dict(self) -> Dict[str, object]:
        return {
            "language": self.language,
            "timezone": self.timezone,
            "system_locale": self.effective_system_locale,
            "culture": self.effective_culture,
            "geo_id": self.geo_id,
            "capabilities": list(self.capabilities),
            "copy_to_system": self.copy_to_system,
            "extra_languages": list(self.extra_languages),
        }


@dataclass
class ConfigCheckResult:
    name: str
    expected: str
    actual: str
    in_desired_state: bool

    def to_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "expected": self.expected,
            "actual": self.actual,
            "in_desired_state": self.in_desired_state,
        }


@dataclass
class ApplyStepResult:
    name: str
    success: bool
    detail: str = ""
    reboot_required: bool = False

    def to_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "success": self.success,
            "detail": self.detail,
            "reboot_required": self.reboot_required,
        }


@dataclass
class LocaleReport:
    profile: LocaleProfile
    checks: List[ConfigCheckResult] = field(default_factory=list)
    steps: List[ApplyStepResult] = field(default_factory=list)

    @property
    def in_desired_state(self) -> bool:
        return all(check.in_desired_state for check in self.checks)

    @property
    def success(self) -> bool:
        return all(step.success for step in self.steps)

    @property
    def reboot_required(self) -> bool:
        return any(step.reboot_required for step in self.steps)

    def to_dict(self) -> Dict[str, object]:
        return {
            "profile": self.profile.to_dict(),
            "checks": [check.to_dict() for check in self.checks],
            "steps": [step.to_dict() for step in self.steps],
            "in_desired_state": self.in_desired_state,
            "success": self.success,
            "reboot_required": self.reboot_required,
        }


def _detail(result: exec_utils.CommandResult) -> str:
    if result.skipped:
        return "dry-run"
    if result.error:
        return f"error: {result.error}"
    text = (result.stderr or result.stdout or "").strip().splitlines()
    suffix = f": {text[-1]}" if text and result.returncode != 0 else ""
    return f"exit {result.returncode}{suffix}"


def _ps_step(
    name: str,
    script: str,
    *,
    event: str,
    dry_run: bool,
    reboot_required: bool = False,
) -> ApplyStepResult:
    result = exec_utils.run_powershell(
        script,
        event=event,
        timeout=300,
        dry_run=dry_run,
        human_message=f"Applying {name.lower()}",
    )
    success = result.skipped or result.ok
    return ApplyStepResult(
        name,
        success,
        _detail(result),
        reboot_required=reboot_required and success and not result.skipped,
    )


def _read_powershell(expression: str, *, event: str) -> str:
    result = exec_utils.run_powershell(expression, event=event, timeout=60)
    if not result.ok:
        return ""
    lines = [line.strip() for line in result.stdout.splitlines() if line.strip()]
    return lines[-1] if lines else ""


# ---------------------------------------------------------------------------
# Language features (DISM)
# ---------------------------------------------------------------------------


def capability_names(profile: LocaleProfile) -> List[str]:
    """!
    @brief DISM capability identifiers for every configured family and language.
    """

    languages = [profile.language, *profile.extra_languages]
    names: List[str] = []
    for language in dict.fromkeys(languages):
        for family in profile.capabilities:
            names.append(f"{family}~~~{language}~{constants.CAPABILITY_VERSION_SUFFIX}")
    return names


def _parse_capability_state(output: str) -> str:
    for line in output.splitlines():
        key, sep, value = line.partition(":")
        if sep and key.strip().lower() == "state":
            return value.strip()
    return ""


def query_capability_state(name: str) -> str:
    """!
    @brief ``Installed``, ``Not Present`` or an empty string when unknown.
    """

    result = exec_utils.run_command(
        ["DISM.exe", "/Online", "/English", "/Get-CapabilityInfo", f"/CapabilityName:{name}"],
        event="dism_capability_query",
        timeout=300,
        extra={"capability": name},
    )
    if not result.ok:
        return ""
    return _parse_capability_state(result.stdout)


def install_language_capabilities(profile: LocaleProfile, *, dry_run: bool = False) -> ApplyStepResult:
    """!
    @brief Add the language features with ``DISM /Add-Capability``.
    @details Already installed features are skipped. Only a failing
    ``Language.Basic`` feature fails the step; the optional families
    (handwriting, OCR, speech) are reported in the detail text.
    """

    human_logger = logging_ext.get_human_logger()
    installed: List[str] = []
    present: List[str] = []
    optional_failures: List[str] = []
    required_failures: List[str] = []
    reboot = False

    for name in capability_names(profile):
        if query_capability_state(name).lower() == "installed":
            present.append(name)
            continue
        result = exec_utils.run_command(
            ["DISM.exe", "/Online", "/Add-Capability", f"/CapabilityName:{name}", "/NoRestart", "/Quiet"],
            event="dism_capability_add",
            timeout=DISM_TIMEOUT,
            dry_run=dry_run,
            human_message=f"Adding language feature {name}",
            extra={"capability": name},
        )
        if result.skipped or result.returncode in {0, constants.REBOOT_REQUIRED_CODE}:
            installed.append(name)
            reboot = reboot or result.returncode == constants.REBOOT_REQUIRED_CODE
            continue
        if name.startswith(constants.REQUIRED_CAPABILITY_FAMILY + "~"):
            required_failures.append(name)
        else:
            human_logger.warning("Optional language feature %s failed (%s)", name, _detail(result))
            optional_failures.append(name)

    parts = [f"added {len(installed)}", f"present {len(present)}"]
    if optional_failures:
        parts.append("optional failed: " + ", ".join(optional_failures))
    if required_failures:
        parts.append("required failed: " + ", ".join(required_failures))
    return ApplyStepResult(
        "Language capabilities",
        not required_failures,
        "; ".join(parts),
        reboot_required=reboot,
    )


# ---------------------------------------------------------------------------
# International settings (PowerShell)
# ---------------------------------------------------------------------------


def set_system_locale(profile: LocaleProfile, *, dry_run: bool = False) -> ApplyStepResult:
    tag = profile.effective_system_locale
    return _ps_step(
        "System locale",
        f"Set-WinSystemLocale -SystemLocale {exec_utils.ps_quote(tag)}",
        event="locale_system_set",
        dry_run=dry_run,
        reboot_required=True,
    )


def set_user_language_list(profile: LocaleProfile, *, dry_run: bool = False) -> ApplyStepResult:
    """!
    @brief Replace the language list with the primary language first.
    """

    lines = [f"$list = New-WinUserLanguageList {exec_utils.ps_quote(profile.language)}"]
    for extra in dict.fromkeys(profile.extra_languages):
        if extra.lower() != profile.language.lower():
            lines.append(f"$list.Add({exec_utils.ps_quote(extra)})")
    lines.append("Set-WinUserLanguageList -LanguageList $list -Force")
    return _ps_step(
        "User language list",
        "; ".join(lines),
        event="locale_language_list_set",
        dry_run=dry_run,
    )


def set_ui_language_override(profile: LocaleProfile, *, dry_run: bool = False) -> ApplyStepResult:
    return _ps_step(
        "Display language",
        f"Set-WinUILanguageOverride -Language {exec_utils.ps_quote(profile.language)}",
        event="locale_ui_language_set",
        dry_run=dry_run,
    )


def set_culture(profile: LocaleProfile, *, dry_run: bool = False) -> ApplyStepResult:
    return _ps_step(
        "Culture",
        f"Set-Culture -CultureInfo {exec_utils.ps_quote(profile.effective_culture)}",
        event="locale_culture_set",
        dry_run=dry_run,
    )


def set_home_location(profile: LocaleProfile, *, dry_run: bool = False) -> ApplyStepResult:
    if profile.geo_id is None:
        return ApplyStepResult("Home location", True, "not configured")
    return _ps_step(
        "Home location",
        f"Set-WinHomeLocation -GeoId {int(profile.geo_id)}",
        event="locale_home_location_set",
        dry_run=dry_run,
    )


def copy_settings_to_system(profile: LocaleProfile, *, dry_run: bool = False) -> ApplyStepResult:
    """!
    @brief Copy the current user's settings to the welcome screen and new users.
    """

    if not profile.copy_to_system:
        return ApplyStepResult("Copy to system", True, "disabled")
    return _ps_step(
        "Copy to system",
        "Copy-UserInternationalSettingsToSystem -WelcomeScreen $true -NewUser $true",
        event="locale_copy_to_system",
        dry_run=dry_run,
        reboot_required=True,
    )


def set_timezone(profile: LocaleProfile, *, dry_run: bool = False) -> ApplyStepResult:
    result = exec_utils.run_command(
        ["tzutil.exe", "/s", profile.timezone],
        event="timezone_set",
        timeout=60,
        dry_run=dry_run,
        human_message=f"Setting timezone to {profile.timezone}",
        extra={"timezone": profile.timezone},
    )
    return ApplyStepResult("Timezone", result.skipped or result.ok, _detail(result))


# ---------------------------------------------------------------------------
# Read-back
# ---------------------------------------------------------------------------


def current_timezone() -> str:
    result = exec_utils.run_command(["tzutil.exe", "/g"], event="timezone_get", timeout=60)
    return result.stdout.strip() if result.ok else ""


def current_system_locale() -> str:
    return _read_powershell("(Get-WinSystemLocale).Name", event="locale_system_get")


def current_culture() -> str:
    return _read_powershell("(Get-Culture).Name", event="locale_culture_get")


def current_ui_language_override() -> str:
    return _read_powershell("(Get-WinUILanguageOverride).Name", event="locale_ui_language_get")


def check(profile: LocaleProfile) -> LocaleReport:
    """!
    @brief Compare the device against ``profile``; comparisons ignore case.
    """

    expectations: Sequence[Tuple[str, str, Callable[[], str]]] = (
        ("Timezone", profile.timezone, current_timezone),
        ("System locale", profile.effective_system_locale, current_system_locale),
        ("Culture", profile.effective_culture, current_culture),
        ("Display language", profile.language, current_ui_language_override),
    )
    report = LocaleReport(profile=profile)
    for name, expected, reader in expectations:
        actual = reader()
        report.checks.append(
            ConfigCheckResult(name, expected, actual, actual.lower() == expected.lower())
        )

    logging_ext.get_machine_logger().info(
        "locale_check_result",
        extra=logging_ext.event_extra(
            "locale_check_result",
            checks=[item.to_dict() for item in report.checks],
            in_desired_state=report.in_desired_state,
        ),
    )
    return report


APPLY_STEPS: Tuple[Callable[..., ApplyStepResult], ...] = (
    install_language_capabilities,
    set_system_locale,
    set_user_language_list,
    set_ui_language_override,
    set_culture,
    set_home_location,
    copy_settings_to_system,
    set_timezone,
)


def apply(profile: LocaleProfile, *, dry_run: bool = False) -> LocaleReport:
    """!
    @brief Apply every step of ``profile`` in order.
    @raises ValueError When ``profile`` does not validate; nothing is run.
    """

    profile.validate()
    human_logger = logging_ext.get_human_logger()
    machine_logger = logging_ext.get_machine_logger()

    report = LocaleReport(profile=profile)
    for step in APPLY_STEPS:
        outcome = step(profile, dry_run=dry_run)
        report.steps.append(outcome)
        log = human_logger.info if outcome.success else human_logger.error
        log("%s: %s (%s)", outcome.name, "ok" if outcome.success else "failed", outcome.detail)

    machine_logger.info(
        "locale_apply_result",
        extra=logging_ext.event_extra(
            "locale_apply_result", dry_run=dry_run, report=report.to_dict()
        ),
    )
    return report
