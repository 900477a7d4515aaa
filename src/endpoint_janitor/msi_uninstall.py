"""!
@brief Helpers for removing the Teams Machine-Wide Installer MSI.
@details The machine-wide installer re-seeds classic Teams into every profile
at logon, so it is removed before any per-user cleanup. Products are found by
product code or display name under the native and WOW6432Node ``Uninstall``
roots and removed silently with ``msiexec /x``.
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List

from . import constants, exec_utils, logging_ext, registry_tools

MSIEXEC_TIMEOUT = 1800
"""!
@brief Maximum seconds to wait for a single ``msiexec`` invocation.
"""

MSI_SUCCESS_CODES = frozenset({0, 1605, 3010})
"""!
@brief Success, ``ERROR_UNKNOWN_PRODUCT`` and ``ERROR_SUCCESS_REBOOT_REQUIRED``.
"""

MSI_BUSY_RETURN_CODE = 1618
MSI_RETRY_ATTEMPTS = 3
MSI_RETRY_DELAY = 10.0
MSI_BUSY_BACKOFF_CAP = 60.0


@dataclass(frozen=True)
class MsiProduct:
    product_code: str
    display_name: str
    version: str
    handle: str

    def to_dict(self) -> dict[str, str]:
        return {
            "product_code": self.product_code,
            "display_name": self.display_name,
            "version": self.version,
            "handle": self.handle,
        }


@dataclass
class MsiResult:
    product: MsiProduct
    returncode: int
    attempts: int
    skipped: bool = False
    log_path: str | None = None

    @property
    def success(self) -> bool:
        return self.skipped or self.returncode in MSI_SUCCESS_CODES

    @property
    def reboot_required(self) -> bool:
        return self.returncode == constants.REBOOT_REQUIRED_CODE


def normalise_product_code(raw: str) -> str:
    """!
    @brief Sanitise ``raw`` into the upper-case ``{GUID}`` form ``msiexec`` expects.
    """

    core = str(raw).strip().strip("\0").strip("{}")
    if not core:
        return ""
    return f"{{{core.upper()}}}"


def find_installed_products(
    codes: Iterable[str] = constants.TEAMS_MACHINE_INSTALLER_CODES,
    display_names: Iterable[str] = (constants.TEAMS_MACHINE_INSTALLER_NAME,),
) -> List[MsiProduct]:
    """!
    @brief Scan the ``Uninstall`` roots for matching MSI products.
    @details A subkey matches when its name is one of ``codes`` or its
    ``DisplayName`` equals one of ``display_names`` (case-insensitive). Only
    GUID-named subkeys are considered since those are MSI registrations.
    """

    wanted_codes = {normalise_product_code(code) for code in codes}
    wanted_names = {name.strip().lower() for name in display_names if name.strip()}
    found: List[MsiProduct] = []
    seen: set[str] = set()

    for root, base in constants.MSI_UNINSTALL_ROOTS:
        try:
            subkeys = list(registry_tools.iter_subkeys(root, base))
        except OSError:
            continue
        for subkey in subkeys:
            if not subkey.startswith("{"):
                continue
            code = normalise_product_code(subkey)
            path = f"{base}\\{subkey}"
            if code in wanted_codes:
                values = registry_tools.read_values(root, path)
            else:
                display = registry_tools.get_value(root, path, "DisplayName")
                if not display or str(display).strip().lower() not in wanted_names:
                    continue
                values = registry_tools.read_values(root, path)
            if code in seen:
                continue
            seen.add(code)
            found.append(
                MsiProduct(
                    product_code=code,
                    display_name=str(values.get("DisplayName", "")),
                    version=str(values.get("DisplayVersion", "")),
                    handle=f"{registry_tools.hive_name(root)}\\{path}",
                )
            )

    return found


def build_uninstall_command(product: MsiProduct, log_path: Path | None = None) -> List[str]:
    command = ["msiexec.exe", "/x", product.product_code, "/qn", "/norestart"]
    if log_path is not None:
        command.extend(["/l*v", str(log_path)])
    return command


def uninstall_product(
    product: MsiProduct,
    *,
    dry_run: bool = False,
    timeout: int = MSIEXEC_TIMEOUT,
    log_directory: Path | None = None,
    attempts: int = MSI_RETRY_ATTEMPTS,
    delay: float = MSI_RETRY_DELAY,
) -> MsiResult:
    """!
    @brief Remove ``product`` with ``msiexec /x``.
    @details ``1618`` (another installation in progress) is retried with a
    doubling delay capped at :data:`MSI_BUSY_BACKOFF_CAP`. Other codes are
    returned as-is.
    """

    human_logger = logging_ext.get_human_logger()

    log_path = None
    if log_directory is not None:
        token = product.product_code.strip("{}")
        log_path = Path(log_directory) / f"msiexec-{token}.log"

    command = build_uninstall_command(product, log_path)
    attempt = 0
    wait = delay
    while True:
        attempt += 1
        result = exec_utils.run_command(
            command,
            event="msi_uninstall",
            timeout=timeout,
            dry_run=dry_run,
            human_message=f"Uninstalling {product.display_name or product.product_code}",
            extra={"product_code": product.product_code, "attempt": attempt},
        )
        if result.skipped:
            return MsiResult(product, 0, attempt, skipped=True, log_path=str(log_path) if log_path else None)
        if result.returncode != MSI_BUSY_RETURN_CODE or attempt >= max(1, attempts):
            break
        human_logger.info(
            "Windows Installer busy; retrying %s in %.0fs",
            product.product_code,
            wait,
        )
        time.sleep(wait)
        wait = min(wait * 2, MSI_BUSY_BACKOFF_CAP)

    outcome = MsiResult(
        product,
        result.returncode,
        attempt,
        log_path=str(log_path) if log_path else None,
    )
    if outcome.success:
        human_logger.info("Removed %s (exit %s)", product.product_code, result.returncode)
    else:
        human_logger.warning(
            "msiexec failed for %s with exit code %s", product.product_code, result.returncode
        )
    return outcome
