"""!
@brief Process termination helpers.
@details Running ``Teams.exe`` instances hold their profile folders open, so
remediation stops them before deleting anything.
"""
from __future__ import annotations

from typing import Dict, Iterable, List

from . import exec_utils, logging_ext

TASKKILL_NOT_FOUND = 128
"""!
@brief ``taskkill`` exit code when no process matched the image name.
"""


def terminate_processes(
    names: Iterable[str],
    *,
    timeout: int = 30,
    dry_run: bool = False,
) -> Dict[str, List[str]]:
    """!
    @brief Stop every process whose image name is in ``names``.
    @returns ``{"terminated": [...], "not_running": [...], "failed": [...]}``.
    """

    human_logger = logging_ext.get_human_logger()
    outcome: Dict[str, List[str]] = {"terminated": [], "not_running": [], "failed": []}

    processes = [name for name in (str(name).strip() for name in names) if name]
    for process in processes:
        result = exec_utils.run_command(
            ["taskkill.exe", "/IM", process, "/F", "/T"],
            event="terminate_process",
            timeout=timeout,
            dry_run=dry_run,
            human_message=f"Stopping {process}",
            extra={"process_name": process},
        )

        if result.skipped or result.ok:
            outcome["terminated"].append(process)
        elif result.returncode == TASKKILL_NOT_FOUND:
            human_logger.debug("%s is not running", process)
            outcome["not_running"].append(process)
        elif result.returncode == exec_utils.MISSING_RETURN_CODE:
            human_logger.debug("taskkill.exe unavailable; cannot stop %s", process)
            outcome["failed"].append(process)
        else:
            human_logger.warning(
                "taskkill exited with %s for %s: %s",
                result.returncode,
                process,
                result.stderr.strip(),
            )
            outcome["failed"].append(process)

    return outcome
