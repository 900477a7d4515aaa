"""!
@brief Primary entry point for the Endpoint Janitor CLI.
@details Parses the subcommand, loads the optional JSON configuration, sets up
logging and dispatches to :mod:`locale_config`, :mod:`detect` or
:mod:`remediate`. Every subcommand prints exactly one summary line on stdout
and maps its outcome to an exit code, which is what management agents such as
Intune proactive remediations read back.
"""
from __future__ import annotations

import argparse
import logging
import pathlib
import sys
from dataclasses import replace
from typing import Callable, Dict, Iterable, Optional

from . import (
    config as config_module,
    detect,
    elevation,
    exec_utils,
    fs_tools,
    locale_config,
    logging_ext,
    remediate,
    version,
)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG_ERROR = 2


def _positive_int(text: str) -> int:
    try:
        value = int(text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid integer: {text!r}") from None
    if value <= 0:
        raise argparse.ArgumentTypeError(f"must be positive: {value}")
    return value


def build_arg_parser() -> argparse.ArgumentParser:
    """!
    @brief Create the top-level parser and its subcommands.
    """

    parser = argparse.ArgumentParser(
        prog="endpoint-janitor",
        description="Locale enforcement and classic Microsoft Teams cleanup for Windows endpoints.",
    )
    metadata = version.build_info()
    parser.add_argument(
        "-V",
        "--version",
        action="version",
        version=f"{metadata['version']} ({metadata['build']})",
    )
    parser.add_argument("--logdir", metavar="DIR", help="Directory for human/JSONL log output.")
    parser.add_argument("--json", action="store_true", help="Mirror structured events to stdout.")
    parser.add_argument("--quiet", action="store_true", help="Minimal console output (errors only).")
    parser.add_argument("--config", metavar="FILE", help="JSON configuration file.")
    parser.add_argument("--timeout", metavar="SEC", type=_positive_int, help="Upper bound for every external command.")
    parser.add_argument(
        "--elevate",
        action="store_true",
        help="Relaunch through UAC when not already running elevated.",
    )

    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")
    subparsers.required = True

    apply_parser = subparsers.add_parser("locale-apply", help="Apply language, locale and timezone settings.")
    _add_locale_arguments(apply_parser)
    apply_parser.add_argument("--dry-run", action="store_true", help="Log the commands without running them.")

    check_parser = subparsers.add_parser("locale-check", help="Report drift from the desired locale settings.")
    _add_locale_arguments(check_parser)

    detect_parser = subparsers.add_parser("teams-detect", help="Detect classic Teams leftovers.")
    _add_teams_arguments(detect_parser)

    remediate_parser = subparsers.add_parser("teams-remediate", help="Remove classic Teams leftovers.")
    _add_teams_arguments(remediate_parser)
    remediate_parser.add_argument("--backup", metavar="DIR", help="Destination for registry exports.")
    remediate_parser.add_argument("--dry-run", action="store_true", help="Log planned removals only.")

    installer_parser = subparsers.add_parser(
        "teams-remove-installer",
        help="Remove only the Teams Machine-Wide Installer.",
    )
    installer_parser.add_argument("--backup", metavar="DIR", help="Destination for registry exports.")
    installer_parser.add_argument("--dry-run", action="store_true", help="Log planned removals only.")
    return parser


def _add_locale_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--language", metavar="TAG", help="Display language, e.g. en-GB.")
    parser.add_argument("--timezone", metavar="ID", help="Windows timezone id, e.g. 'GMT Standard Time'.")
    parser.add_argument("--system-locale", metavar="TAG", help="System locale (defaults to --language).")
    parser.add_argument("--culture", metavar="TAG", help="Regional format (defaults to --language).")
    parser.add_argument("--geo-id", metavar="ID", type=int, help="Windows GeoID for the home location.")
    parser.add_argument(
        "--extra-language",
        metavar="TAG",
        action="append",
        default=None,
        help="Additional input language; may be repeated.",
    )
    parser.add_argument(
        "--no-copy-to-system",
        action="store_true",
        help="Do not copy settings to the welcome screen and new users.",
    )


def _add_teams_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--no-default-profile",
        action="store_true",
        help="Skip the Default (new user template) profile.",
    )
    parser.add_argument("--skip-appx", action="store_true", help="Ignore the MicrosoftTeams AppX package.")


def _resolve_log_directory(candidate: Optional[str]) -> pathlib.Path:
    if candidate:
        return pathlib.Path(candidate).expanduser().resolve()
    default_dir = fs_tools.get_default_log_directory().expanduser()
    try:
        return default_dir.resolve()
    except OSError:
        return default_dir


def _bootstrap_logging(args: argparse.Namespace, app_config: config_module.AppConfig) -> logging.Logger:
    logdir = _resolve_log_directory(args.logdir or app_config.logdir)
    human_logger, _ = logging_ext.setup_logging(
        logdir,
        json_to_stdout=bool(args.json),
        console=not args.quiet,
    )
    if args.quiet:
        human_logger.setLevel(logging.ERROR)
    return human_logger


def _locale_profile(args: argparse.Namespace, base: locale_config.LocaleProfile) -> locale_config.LocaleProfile:
    """!
    @brief Overlay CLI flags on the configured profile.
    """

    overrides: Dict[str, object] = {}
    for attribute in ("language", "timezone", "system_locale", "culture", "geo_id"):
        value = getattr(args, attribute, None)
        if value is not None:
            overrides[attribute] = value
    if args.extra_language:
        overrides["extra_languages"] = tuple(args.extra_language)
    if args.no_copy_to_system:
        overrides["copy_to_system"] = False
    profile = replace(base, **overrides)
    try:
        profile.validate()
    except ValueError as exc:
        raise config_module.ConfigError(str(exc)) from exc
    return profile


def _teams_options(args: argparse.Namespace, base: detect.TeamsOptions) -> detect.TeamsOptions:
    overrides: Dict[str, object] = {}
    if getattr(args, "no_default_profile", False):
        overrides["include_default_profile"] = False
    if getattr(args, "skip_appx", False):
        overrides["remove_appx"] = False
    if getattr(args, "backup", None):
        overrides["backup"] = args.backup
    return replace(base, **overrides)


# ---------------------------------------------------------------------------
# Subcommands
# ---------------------------------------------------------------------------


def _cmd_locale_apply(args: argparse.Namespace, app_config: config_module.AppConfig) -> int:
    profile = _locale_profile(args, app_config.locale)
    report = locale_config.apply(profile, dry_run=args.dry_run)
    failed = [step.name for step in report.steps if not step.success]
    if failed:
        print(f"Locale apply failed: {', '.join(failed)}")
        return EXIT_FAILURE
    suffix = "; reboot required" if report.reboot_required else ""
    prefix = "Dry-run: locale" if args.dry_run else "Locale"
    print(f"{prefix} {profile.language} / {profile.timezone} applied{suffix}")
    return EXIT_OK


def _cmd_locale_check(args: argparse.Namespace, app_config: config_module.AppConfig) -> int:
    profile = _locale_profile(args, app_config.locale)
    report = locale_config.check(profile)
    if report.in_desired_state:
        print(f"Locale compliant: {profile.language} / {profile.timezone}")
        return EXIT_OK
    drift = [
        f"{item.name}={item.actual or '?'} (want {item.expected})"
        for item in report.checks
        if not item.in_desired_state
    ]
    print("Locale drift: " + "; ".join(drift))
    return EXIT_FAILURE


def _cmd_teams_detect(args: argparse.Namespace, app_config: config_module.AppConfig) -> int:
    report = detect.run_detection(_teams_options(args, app_config.teams))
    print(report.summary())
    return EXIT_OK if report.compliant else EXIT_FAILURE


def _cmd_teams_remediate(args: argparse.Namespace, app_config: config_module.AppConfig) -> int:
    report = remediate.remediate(_teams_options(args, app_config.teams), dry_run=args.dry_run)
    print(report.summary())
    return EXIT_OK if report.succeeded else EXIT_FAILURE


def _cmd_teams_remove_installer(args: argparse.Namespace, app_config: config_module.AppConfig) -> int:
    report = remediate.remove_machine_wide_installer(
        _teams_options(args, app_config.teams), dry_run=args.dry_run
    )
    print(report.summary())
    return EXIT_OK if report.succeeded else EXIT_FAILURE


COMMANDS: Dict[str, Callable[[argparse.Namespace, config_module.AppConfig], int]] = {
    "locale-apply": _cmd_locale_apply,
    "locale-check": _cmd_locale_check,
    "teams-detect": _cmd_teams_detect,
    "teams-remediate": _cmd_teams_remediate,
    "teams-remove-installer": _cmd_teams_remove_installer,
}


def main(argv: Optional[Iterable[str]] = None) -> int:
    """!
    @brief Entry point for the console script and ``python -m``.
    @returns Process exit code integer.
    """

    parser = build_arg_parser()
    raw_args = list(argv) if argv is not None else sys.argv[1:]
    args = parser.parse_args(raw_args)

    if args.elevate and not elevation.is_admin():
        if elevation.relaunch_as_admin([item for item in raw_args if item != "--elevate"]):
            return EXIT_OK
        print("Failed to request elevation.", file=sys.stderr)
        return EXIT_FAILURE

    try:
        app_config = config_module.load_config(args.config)
    except config_module.ConfigError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    human_logger = _bootstrap_logging(args, app_config)
    exec_utils.set_global_timeout(args.timeout if args.timeout is not None else app_config.timeout)
    logging_ext.get_machine_logger().info(
        "startup",
        extra=logging_ext.event_extra("startup", command=args.command, argv=raw_args),
    )

    handler = COMMANDS[args.command]
    try:
        return handler(args, app_config)
    except config_module.ConfigError as exc:
        human_logger.error("Configuration error: %s", exc)
        print(f"Configuration error: {exc}")
        return EXIT_CONFIG_ERROR
    except PermissionError as exc:
        human_logger.error("%s", exc)
        print(f"Error: {exc}")
        return EXIT_FAILURE
    except ValueError as exc:
        human_logger.error("Safety check failed: %s", exc)
        print(f"Error: {exc}")
        return EXIT_FAILURE


if __name__ == "__main__":  # pragma: no cover - manual invocation
    sys.exit(main())
