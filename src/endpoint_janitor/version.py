"""!
@brief Version metadata for Endpoint Janitor.
@details The packaged ``VERSION`` file is the single source of truth so the CLI
banner, the ``run_start`` log event and the build backend agree.
"""
from __future__ import annotations

from importlib import resources
from typing import Dict

__all__ = ["__version__", "__build__", "build_info"]


def _load_version() -> str:
    version_path = resources.files(__package__).joinpath("VERSION")
    try:
        return version_path.read_text(encoding="utf-8").strip()
    except FileNotFoundError:  # pragma: no cover - source checkouts always ship it
        return "0.0.0"


__version__ = _load_version()
__build__ = "dev"


def build_info() -> Dict[str, str]:
    """!
    @brief Provide a mapping with the current version metadata.
    @returns Dictionary containing ``version`` and ``build`` keys.
    """

    return {"version": __version__, "build": __build__}
