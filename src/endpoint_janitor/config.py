"""!
@brief JSON configuration loading.
@details An optional file passed with ``--config`` overrides the built-in
defaults; CLI flags then override the file. Example::

    {
      "logdir": "C:\\ProgramData\\EndpointJanitor\\logs",
      "timeout": 900,
      "locale": {"language": "en-GB", "timezone": "GMT Standard Time", "geo_id": 242},
      "teams": {"include_default_profile": true, "services": []}
    }

Unknown keys are rejected so typos do not silently fall back to defaults.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Mapping

from .detect import TeamsOptions
from .locale_config import LocaleProfile


class ConfigError(ValueError):
    """!
    @brief Raised for unreadable, malformed or invalid configuration.
    """


@dataclass(frozen=True)
class AppConfig:
    locale: LocaleProfile = field(default_factory=LocaleProfile)
    teams: TeamsOptions = field(default_factory=TeamsOptions)
    logdir: str | None = None
    timeout: int | None = None


_TOP_LEVEL_KEYS = {"locale", "teams", "logdir", "timeout"}
_LOCALE_KEYS = {
    "language",
    "timezone",
    "system_locale",
    "culture",
    "geo_id",
    "capabilities",
    "copy_to_system",
    "extra_languages",
}
_TEAMS_KEYS = {"include_default_profile", "remove_appx", "services", "extra_paths", "backup"}


def _reject_unknown(section: str, data: Mapping[str, Any], allowed: set[str]) -> None:
    unknown = sorted(set(data) - allowed)
    if unknown:
        raise ConfigError(f"Unknown key(s) in {section}: {', '.join(unknown)}")


def _expect(section: str, key: str, value: Any, kind: type | tuple[type, ...]) -> Any:
    if isinstance(value, bool) and kind is int:
        raise ConfigError(f"{section}.{key} must be an integer")
    if not isinstance(value, kind):
        expected = kind.__name__ if isinstance(kind, type) else "/".join(k.__name__ for k in kind)
        raise ConfigError(f"{section}.{key} must be of type {expected}")
    return value


def _string_tuple(section: str, key: str, value: Any) -> tuple[str, ...]:
    _expect(section, key, value, list)
    for item in value:
        if not isinstance(item, str) or not item.strip():
            raise ConfigError(f"{section}.{key} must contain non-empty strings")
    return tuple(item.strip() for item in value)


def _locale_from_mapping(data: Mapping[str, Any]) -> LocaleProfile:
    _expect("config", "locale", data, dict)
    _reject_unknown("locale", data, _LOCALE_KEYS)
    kwargs: dict[str, Any] = {}
    for key in ("language", "timezone", "system_locale", "culture"):
        if key in data:
            kwargs[key] = _expect("locale", key, data[key], str).strip()
    if "geo_id" in data and data["geo_id"] is not None:
        kwargs["geo_id"] = _expect("locale", "geo_id", data["geo_id"], int)
    if "capabilities" in data:
        kwargs["capabilities"] = _string_tuple("locale", "capabilities", data["capabilities"])
    if "extra_languages" in data:
        kwargs["extra_languages"] = _string_tuple("locale", "extra_languages", data["extra_languages"])
    if "copy_to_system" in data:
        kwargs["copy_to_system"] = _expect("locale", "copy_to_system", data["copy_to_system"], bool)

    profile = LocaleProfile(**kwargs)
    try:
        profile.validate()
    except ValueError as exc:
        raise ConfigError(str(exc)) from exc
    return profile


def _teams_from_mapping(data: Mapping[str, Any]) -> TeamsOptions:
    _expect("config", "teams", data, dict)
    _reject_unknown("teams", data, _TEAMS_KEYS)
    kwargs: dict[str, Any] = {}
    for key in ("include_default_profile", "remove_appx"):
        if key in data:
            kwargs[key] = _expect("teams", key, data[key], bool)
    for key in ("services", "extra_paths"):
        if key in data:
            kwargs[key] = _string_tuple("teams", key, data[key])
    if data.get("backup") is not None:
        kwargs["backup"] = _expect("teams", "backup", data["backup"], str)
    return TeamsOptions(**kwargs)


def config_from_mapping(data: Mapping[str, Any]) -> AppConfig:
    """!
    @brief Build an :class:`AppConfig` from parsed JSON.
    @raises ConfigError For unknown keys, wrong types or invalid values.
    """

    if not isinstance(data, Mapping):
        raise ConfigError("Configuration root must be a JSON object")
    _reject_unknown("config", data, _TOP_LEVEL_KEYS)

    config = AppConfig()
    if "locale" in data:
        config = replace(config, locale=_locale_from_mapping(data["locale"]))
    if "teams" in data:
        config = replace(config, teams=_teams_from_mapping(data["teams"]))
    if data.get("logdir") is not None:
        config = replace(config, logdir=_expect("config", "logdir", data["logdir"], str))
    if data.get("timeout") is not None:
        timeout = _expect("config", "timeout", data["timeout"], int)
        if timeout <= 0:
            raise ConfigError("config.timeout must be positive")
        config = replace(config, timeout=timeout)
    return config


def load_config(path: str | Path | None) -> AppConfig:
    """!
    @brief Read ``path`` or return defaults when ``path`` is ``None``.
    """

    if path is None:
        return AppConfig()
    source = Path(path)
    try:
        text = source.read_text(encoding="utf-8-sig")
    except OSError as exc:
        raise ConfigError(f"Cannot read configuration file {source}: {exc}") from exc
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Invalid JSON in {source}: {exc}") from exc
    return config_from_mapping(data)


__all__ = [
    "AppConfig",
    "ConfigError",
    "config_from_mapping",
    "load_config",
]
