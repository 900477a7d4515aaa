"""!
@brief Windows service helpers.
@details Wraps ``sc.exe`` to query, stop and delete services named in the Teams
cleanup configuration. Stop timeouts are reported so the remediation summary
can ask for a reboot.
"""
from __future__ import annotations

from typing import Dict, Iterable, List

from . import exec_utils, logging_ext

SERVICE_DOES_NOT_EXIST = 1060
"""!
@brief ``sc.exe`` exit code for ``ERROR_SERVICE_DOES_NOT_EXIST``.
"""

SERVICE_NOT_ACTIVE = 1062


def _clean(names: Iterable[str]) -> List[str]:
    return [name for name in (str(name).strip() for name in names) if name]


def _parse_service_state(output: str) -> str:
    """!
    @brief Extract the status token from ``sc query`` output.
    @returns Uppercase status token or empty string when not detected.
    """

    for line in output.splitlines():
        stripped = line.strip()
        if stripped.upper().startswith("STATE"):
            _, _, remainder = stripped.partition(":")
            tokens = remainder.strip().split()
            if tokens:
                return tokens[-1].upper()
    return ""


def query_service_status(service: str, *, timeout: int = 30) -> str:
    """!
    @brief Return ``RUNNING``, ``STOPPED`` (or another ``sc`` state),
    ``MISSING`` or ``UNKNOWN``.
    """

    name = str(service).strip()
    if not name:
        return "UNKNOWN"

    result = exec_utils.run_command(
        ["sc.exe", "query", name],
        event="service_query",
        timeout=timeout,
        extra={"service": name},
    )
    if result.returncode == SERVICE_DOES_NOT_EXIST:
        return "MISSING"
    if result.ok:
        return _parse_service_state(result.stdout) or "UNKNOWN"
    return "UNKNOWN"


def service_exists(service: str) -> bool:
    return query_service_status(service) not in {"MISSING", "UNKNOWN"}


def stop_services(
    service_names: Iterable[str],
    *,
    timeout: int = 30,
    dry_run: bool = False,
) -> Dict[str, object]:
    """!
    @brief Stop services and disable them so they cannot restart mid-cleanup.
    @returns ``reboot_required`` plus the services that timed out.
    """

    human_logger = logging_ext.get_human_logger()
    machine_logger = logging_ext.get_machine_logger()
    reboot_services: List[str] = []

    for service in _clean(service_names):
        stop_result = exec_utils.run_command(
            ["sc.exe", "stop", service],
            event="service_stop",
            timeout=timeout,
            dry_run=dry_run,
            human_message=f"Stopping service {service}",
            extra={"service": service},
        )
        if stop_result.timed_out:
            reboot_services.append(service)
            human_logger.warning(
                "Timed out stopping service %s; a reboot is needed to finish removing it.",
                service,
            )
            machine_logger.warning(
                "service_stop_timeout",
                extra=logging_ext.event_extra(
                    "service_stop_timeout", service=service, reboot_required=True
                ),
            )
        elif stop_result.returncode not in {0, SERVICE_NOT_ACTIVE, SERVICE_DOES_NOT_EXIST}:
            human_logger.debug("Service %s stop returned %s", service, stop_result.returncode)

        exec_utils.run_command(
            ["sc.exe", "config", service, "start=", "disabled"],
            event="service_disable",
            timeout=timeout,
            dry_run=dry_run,
            human_message=f"Disabling service {service}",
            extra={"service": service},
        )

    unique = list(dict.fromkeys(reboot_services))
    return {"reboot_required": bool(unique), "services_requiring_reboot": unique}


def delete_services(service_names: Iterable[str], *, dry_run: bool = False) -> Dict[str, List[str]]:
    """!
    @brief Remove services with ``sc delete``.
    @returns ``{"deleted": [...], "failed": [...]}``; already missing services
    count as deleted.
    """

    human_logger = logging_ext.get_human_logger()
    outcome: Dict[str, List[str]] = {"deleted": [], "failed": []}

    for service in _clean(service_names):
        result = exec_utils.run_command(
            ["sc.exe", "delete", service],
            event="service_delete",
            timeout=30,
            dry_run=dry_run,
            human_message=f"Deleting service {service}",
            extra={"service": service},
        )
        if result.skipped or result.ok or result.returncode == SERVICE_DOES_NOT_EXIST:
            outcome["deleted"].append(service)
        else:
            human_logger.warning("Service %s delete returned %s", service, result.returncode)
            outcome["failed"].append(service)

    return outcome
