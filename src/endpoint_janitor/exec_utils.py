"""!
@brief Subprocess execution helpers with sanitised environments.
@details Every external tool the janitor drives (``reg.exe``, ``msiexec``,
``DISM``, ``tzutil``, ``sc.exe``, ``taskkill`` and PowerShell) goes through
:func:`run_command` so dry-run handling, timeouts and telemetry stay uniform.
Child processes get an environment stripped of Python virtualenv variables,
which otherwise leak into PowerShell when the tool runs from a frozen bundle.
"""

from __future__ import annotations

import locale
import os
import subprocess
import time
from collections.abc import Iterable, Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from typing import Any

from . import logging_ext

OUTPUT_ENCODING = locale.getpreferredencoding(False)
"""!
@brief Codec for child output; undecodable bytes become U+FFFD.
@details Console tools such as ``reg.exe`` and ``taskkill`` write in the OEM
code page, which rarely matches the ANSI code page on localised Windows.
"""

_SANITIZE_BLOCKLIST = {
    "PYTHONPATH",
    "PYTHONHOME",
    "PYTHONWARNINGS",
    "VIRTUAL_ENV",
    "PIP_REQUIRE_VIRTUALENV",
    "CONDA_PREFIX",
    "CONDA_DEFAULT_ENV",
    "PYENV_VERSION",
    "POETRY_ACTIVE",
    "__PYVENV_LAUNCHER__",
}

MISSING_RETURN_CODE = 127
"""!
@brief Return code reported when the executable could not be found.
"""


@dataclass
class CommandResult:
    """!
    @brief Outcome information from :func:`run_command`.
    @details ``skipped`` is ``True`` for dry-run results, ``timed_out`` when the
    process exceeded its timeout, and ``error`` carries a short reason for
    launch failures.
    """

    command: Sequence[str]
    returncode: int
    stdout: str
    stderr: str
    duration: float
    skipped: bool = False
    timed_out: bool = False
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.error and not self.timed_out


_GLOBAL_TIMEOUT: float | None = None


def set_global_timeout(timeout_seconds: float | int | None) -> None:
    """!
    @brief Apply a global timeout cap for all subprocess calls.
    @details :func:`run_command` uses the smaller of the caller's timeout and
    this cap, which is how the CLI ``--timeout`` flag bounds every step.
    """

    global _GLOBAL_TIMEOUT
    if timeout_seconds is None:
        _GLOBAL_TIMEOUT = None
        return
    try:
        parsed = float(timeout_seconds)
    except (TypeError, ValueError):
        _GLOBAL_TIMEOUT = None
    else:
        _GLOBAL_TIMEOUT = parsed if parsed > 0 else None


def _resolve_timeout(requested: float | int | None) -> float | int | None:
    if _GLOBAL_TIMEOUT is None:
        return requested
    if requested is None:
        return _GLOBAL_TIMEOUT
    return min(_GLOBAL_TIMEOUT, requested)


def _call_payload(
    command_list: Sequence[str],
    *,
    timeout: float | int | None,
    cwd: str | None,
    extra: Mapping[str, object] | None,
) -> MutableMapping[str, object]:
    payload: MutableMapping[str, object] = {
        "command": list(command_list),
        "timeout": timeout,
    }
    if cwd:
        payload["cwd"] = cwd
    if extra:
        for key, value in extra.items():
            if key not in {"event", "result"}:
                payload[key] = value
    return payload


def _result_payload(
    *,
    return_code: int,
    duration: float,
    stdout: str = "",
    stderr: str = "",
    error: str | None = None,
    timed_out: bool = False,
) -> dict[str, object]:
    return {
        "rc": return_code,
        "duration_ms": round(duration * 1000, 3),
        "stdout": stdout,
        "stderr": stderr,
        "error": error,
        "timed_out": timed_out,
    }


def sanitize_environment(
    *,
    base_env: Mapping[str, str] | None = None,
    inherit: bool = True,
    extra: Mapping[str, str] | None = None,
    remove: Iterable[str] | None = None,
) -> MutableMapping[str, str]:
    """!
    @brief Produce a subprocess environment stripped of virtualenv artefacts.
    @param base_env Source mapping; defaults to :data:`os.environ` when
    ``inherit`` is ``True``.
    @param inherit Whether to start from the host environment.
    @param extra Overrides applied after sanitisation.
    @param remove Additional variable names to drop.
    @returns Mutable mapping ready for subprocess invocation.
    """

    if base_env is not None:
        environment: MutableMapping[str, str] = {
            str(k): str(v) for k, v in base_env.items() if v is not None
        }
    elif inherit:
        environment = {str(k): str(v) for k, v in os.environ.items() if v is not None}
    else:
        environment = {}

    for key in _SANITIZE_BLOCKLIST:
        environment.pop(key, None)
    for key in remove or ():
        environment.pop(key, None)
    for key, value in (extra or {}).items():
        environment[str(key)] = str(value)

    return environment


def run_command(
    command: Sequence[str] | str,
    *,
    event: str,
    timeout: int | float | None = None,
    dry_run: bool = False,
    human_message: str | None = None,
    extra: Mapping[str, object] | None = None,
    env: Mapping[str, str] | None = None,
    inherit_env: bool = True,
    env_overrides: Mapping[str, str] | None = None,
    env_remove: Iterable[str] | None = None,
    cwd: str | None = None,
    check: bool = False,
) -> CommandResult:
    """!
    @brief Execute ``command`` with consistent logging and environment hygiene.
    @details Emits ``<event>_plan`` before the call and one of
    ``<event>_result``, ``<event>_dry_run``, ``<event>_missing``,
    ``<event>_timeout`` or ``<event>_error`` afterwards. Launch failures are
    reported through the returned :class:`CommandResult` rather than raised.
    @param command Sequence of command arguments.
    @param event Base name for structured log events.
    @param timeout Optional timeout in seconds.
    @param dry_run When ``True`` no subprocess is spawned.
    @param human_message Optional message for the human channel.
    @param extra Additional metadata merged into machine log payloads.
    @param check When ``True`` a non-zero exit raises
    :class:`subprocess.CalledProcessError` after logging.
    @returns :class:`CommandResult` describing the observed outcome.
    """

    human_logger = logging_ext.get_human_logger()
    machine_logger = logging_ext.get_machine_logger()

    command_list = [command] if isinstance(command, str) else [str(part) for part in command]
    effective_timeout: Any = _resolve_timeout(timeout)
    call = _call_payload(command_list, timeout=effective_timeout, cwd=cwd, extra=extra)

    machine_logger.info(
        f"{event}_plan",
        extra={"event": f"{event}_plan", "call": dict(call), "dry_run": dry_run},
    )

    if dry_run:
        if human_message:
            human_logger.info("%s [dry-run]", human_message)
        else:
            human_logger.info("Dry-run: would execute %s", " ".join(command_list))
        machine_logger.info(
            f"{event}_dry_run",
            extra={
                "event": f"{event}_dry_run",
                "call": dict(call),
                "result": _result_payload(return_code=0, duration=0.0),
            },
        )
        return CommandResult(
            command=command_list,
            returncode=0,
            stdout="",
            stderr="",
            duration=0.0,
            skipped=True,
        )

    if human_message:
        human_logger.info(human_message)

    sanitized_env = sanitize_environment(
        base_env=env,
        inherit=inherit_env,
        extra=env_overrides,
        remove=env_remove,
    )

    def _failure(suffix: str, result: CommandResult) -> CommandResult:
        machine_logger.error(
            f"{event}_{suffix}",
            extra={
                "event": f"{event}_{suffix}",
                "call": dict(call),
                "result": _result_payload(
                    return_code=result.returncode,
                    duration=result.duration,
                    stdout=result.stdout,
                    stderr=result.stderr,
                    error=result.error,
                    timed_out=result.timed_out,
                ),
            },
        )
        return result

    start = time.monotonic()
    try:
        completed = subprocess.run(  # noqa: S603 - intentional command execution
            command_list,
            capture_output=True,
            text=True,
            encoding=OUTPUT_ENCODING,
            errors="replace",
            timeout=effective_timeout,
            check=False,
            env=sanitized_env,
            cwd=cwd,
        )
    except FileNotFoundError as exc:
        human_logger.error("Command not found: %s", command_list[0])
        return _failure(
            "missing",
            CommandResult(
                command=command_list,
                returncode=MISSING_RETURN_CODE,
                stdout="",
                stderr="",
                duration=time.monotonic() - start,
                error=str(exc),
            ),
        )
    except subprocess.TimeoutExpired as exc:
        duration = time.monotonic() - start
        human_logger.error("Command timed out after %.1fs: %s", duration, command_list[0])
        return _failure(
            "timeout",
            CommandResult(
                command=command_list,
                returncode=1,
                stdout=_as_text(exc.stdout),
                stderr=_as_text(exc.stderr),
                duration=duration,
                timed_out=True,
                error="timeout",
            ),
        )
    except OSError as exc:
        human_logger.error("Failed to execute %s: %s", command_list[0], exc)
        return _failure(
            "error",
            CommandResult(
                command=command_list,
                returncode=1,
                stdout="",
                stderr="",
                duration=time.monotonic() - start,
                error=str(exc),
            ),
        )

    duration = time.monotonic() - start
    stdout = completed.stdout or ""
    stderr = completed.stderr or ""
    machine_logger.info(
        f"{event}_result",
        extra={
            "event": f"{event}_result",
            "call": dict(call),
            "result": _result_payload(
                return_code=completed.returncode,
                duration=duration,
                stdout=stdout,
                stderr=stderr,
            ),
        },
    )

    if completed.returncode != 0:
        human_logger.warning("Command %s exited with %s", command_list[0], completed.returncode)

    if check and completed.returncode != 0:
        raise subprocess.CalledProcessError(
            completed.returncode,
            command_list,
            output=stdout,
            stderr=stderr,
        )

    return CommandResult(
        command=command_list,
        returncode=completed.returncode,
        stdout=stdout,
        stderr=stderr,
        duration=duration,
    )


def _as_text(stream: object) -> str:
    if stream is None:
        return ""
    if isinstance(stream, bytes):
        return stream.decode(OUTPUT_ENCODING, errors="replace")
    return str(stream)


def run_powershell(
    script: str,
    *,
    event: str,
    timeout: int | float | None = 300,
    dry_run: bool = False,
    human_message: str | None = None,
    extra: Mapping[str, object] | None = None,
) -> CommandResult:
    """!
    @brief Run a PowerShell snippet through :func:`run_command`.
    """

    return run_command(
        ["powershell.exe", "-NoProfile", "-NonInteractive", "-ExecutionPolicy", "Bypass", "-Command", script],
        event=event,
        timeout=timeout,
        dry_run=dry_run,
        human_message=human_message,
        extra=extra,
    )


def ps_quote(value: object) -> str:
    """!
    @brief Quote ``value`` as a single-quoted PowerShell string literal.
    """

    return "'" + str(value).replace("'", "''") + "'"
