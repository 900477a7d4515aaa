"""!
@brief Structured logging helpers for Endpoint Janitor.
@details Two channels are configured: a human-readable text log and a JSON
Lines event stream. Management agents such as Intune only keep the last lines
of stdout, so the files under the log directory are the durable record of what
a detection or remediation run saw and changed.
"""
from __future__ import annotations

import datetime as _dt
import json
import logging
import sys
import uuid
from logging import handlers
from pathlib import Path
from typing import Dict, Iterable, Mapping, Tuple

from . import version

HUMAN_LOGGER_NAME = "endpoint_janitor.human"
"""!
@brief Logger name for human-readable output.
"""

MACHINE_LOGGER_NAME = "endpoint_janitor.machine"
"""!
@brief Logger name for JSONL telemetry output.
"""

HUMAN_LOG_FILENAME = "human.log"
MACHINE_LOG_FILENAME = "events.jsonl"

_MAX_BYTES = 1_048_576
_BACKUP_COUNT = 5

_STANDARD_RECORD_KEYS = frozenset(
    {
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "exc_info",
        "exc_text",
        "stack_info",
        "lineno",
        "funcName",
        "created",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "taskName",
        "message",
        "asctime",
        "channel",
    }
)

_CURRENT_LOG_DIRECTORY: Path | None = None
_RUN_METADATA: Dict[str, object] | None = None


class _ChannelFilter(logging.Filter):
    """!
    @brief Stamp a fixed ``channel`` attribute on every record.
    """

    def __init__(self, channel: str) -> None:
        super().__init__()
        self._channel = channel

    def filter(self, record: logging.LogRecord) -> bool:
        record.channel = self._channel
        return True


class _JsonLineFormatter(logging.Formatter):
    """!
    @brief Format ``LogRecord`` instances as single-line JSON objects.
    @details Standard metadata (timestamp, level, logger, message, channel) is
    merged with any ``extra`` attributes supplied by the caller. Values that
    cannot be serialised are written as their ``repr``.
    """

    def format(self, record: logging.LogRecord) -> str:  # noqa: D401 - concise override
        payload: Dict[str, object] = {
            "timestamp": _utc_timestamp(record.created),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "channel": getattr(record, "channel", "machine"),
        }
        payload.update(_extract_extras(record))
        try:
            return json.dumps(payload, ensure_ascii=False)
        except TypeError:
            sanitized = {key: _coerce_json(value) for key, value in payload.items()}
            return json.dumps(sanitized, ensure_ascii=False)


def _utc_timestamp(created: float | None = None) -> str:
    if created is None:
        moment = _dt.datetime.now(tz=_dt.timezone.utc)
    else:
        moment = _dt.datetime.fromtimestamp(created, tz=_dt.timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _extract_extras(record: logging.LogRecord) -> Dict[str, object]:
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _STANDARD_RECORD_KEYS
    }


def _coerce_json(value: object) -> object:
    try:
        json.dumps(value)
    except TypeError:
        return repr(value)
    return value


def _configure_logger(
    logger: logging.Logger,
    formatter: logging.Formatter,
    handlers_to_add: Iterable[logging.Handler],
) -> None:
    """!
    @brief Reset a logger and attach the supplied handlers.
    """

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    for flt in list(logger.filters):
        logger.removeFilter(flt)
    for handler in handlers_to_add:
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    logger.propagate = False


def setup_logging(
    root_dir: Path,
    *,
    json_to_stdout: bool = False,
    console: bool = False,
    level: int = logging.INFO,
) -> Tuple[logging.Logger, logging.Logger]:
    """!
    @brief Set up the human and machine loggers.
    @details Creates ``root_dir`` when missing and attaches rotating file
    handlers for both streams. ``console`` mirrors the human channel on stderr
    so stdout stays reserved for the one-line result read by management agents;
    ``json_to_stdout`` additionally mirrors machine events on stdout.
    @returns ``(human_logger, machine_logger)``.
    """

    global _CURRENT_LOG_DIRECTORY

    root_dir = Path(root_dir)
    root_dir.mkdir(parents=True, exist_ok=True)
    _CURRENT_LOG_DIRECTORY = root_dir

    human_logger = logging.getLogger(HUMAN_LOGGER_NAME)
    machine_logger = logging.getLogger(MACHINE_LOGGER_NAME)
    human_logger.setLevel(level)
    machine_logger.setLevel(level)

    human_formatter = logging.Formatter(
        "%(asctime)s %(levelname)-8s [%(channel)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    machine_formatter = _JsonLineFormatter()

    human_handlers: list[logging.Handler] = [
        handlers.RotatingFileHandler(
            root_dir / HUMAN_LOG_FILENAME,
            maxBytes=_MAX_BYTES,
            backupCount=_BACKUP_COUNT,
            encoding="utf-8",
        )
    ]
    if console:
        human_handlers.append(logging.StreamHandler(stream=sys.stderr))

    machine_handlers: list[logging.Handler] = [
        handlers.RotatingFileHandler(
            root_dir / MACHINE_LOG_FILENAME,
            maxBytes=_MAX_BYTES,
            backupCount=_BACKUP_COUNT,
            encoding="utf-8",
        )
    ]
    if json_to_stdout:
        machine_handlers.append(logging.StreamHandler(stream=sys.stdout))

    _configure_logger(human_logger, human_formatter, human_handlers)
    _configure_logger(machine_logger, machine_formatter, machine_handlers)

    human_logger.addFilter(_ChannelFilter("human"))
    machine_logger.addFilter(_ChannelFilter("machine"))

    _emit_run_metadata(human_logger, machine_logger)

    return human_logger, machine_logger


def get_human_logger() -> logging.Logger:
    """!
    @brief Retrieve the configured human-readable logger.
    """

    return logging.getLogger(HUMAN_LOGGER_NAME)


def get_machine_logger() -> logging.Logger:
    """!
    @brief Retrieve the configured machine/JSON logger.
    """

    return logging.getLogger(MACHINE_LOGGER_NAME)


def get_log_directory() -> Path | None:
    return _CURRENT_LOG_DIRECTORY


def get_run_metadata() -> Mapping[str, object] | None:
    """!
    @brief Return the metadata recorded by the latest :func:`setup_logging`.
    @details Contains ``run_id`` (uuid4 hex), an ISO-8601 UTC ``timestamp``,
    version/build identifiers, the Python version and the log directory.
    """

    return dict(_RUN_METADATA) if _RUN_METADATA is not None else None


def event_extra(event: str, **fields: object) -> Dict[str, object]:
    """!
    @brief Build an ``extra`` mapping for a machine log event.
    """

    payload: Dict[str, object] = {"event": event}
    payload.update(fields)
    return payload


def _emit_run_metadata(human_logger: logging.Logger, machine_logger: logging.Logger) -> None:
    global _RUN_METADATA

    _RUN_METADATA = {
        "run_id": uuid.uuid4().hex,
        "timestamp": _utc_timestamp(),
        "version": version.__version__,
        "build": version.__build__,
        "python": sys.version.split()[0],
        "logdir": str(_CURRENT_LOG_DIRECTORY) if _CURRENT_LOG_DIRECTORY else None,
    }

    human_logger.info(
        "Endpoint Janitor %s (%s) starting, run %s",
        version.__version__,
        version.__build__,
        _RUN_METADATA["run_id"],
    )
    if _CURRENT_LOG_DIRECTORY is not None:
        human_logger.info("Logs directory: %s", _CURRENT_LOG_DIRECTORY)

    machine_logger.info("run_start", extra=event_extra("run_start", run=dict(_RUN_METADATA)))
