"""!
@brief Endpoint Janitor package root.
@details Modules under this namespace enforce the machine locale and detect or
remediate leftover classic Microsoft Teams installations on managed Windows
endpoints.
"""

__all__ = [
    "main",
    "config",
    "constants",
    "detect",
    "remediate",
    "locale_config",
    "msi_uninstall",
    "appx_uninstall",
    "registry_tools",
    "user_hives",
    "fs_tools",
    "processes",
    "tasks_services",
    "logging_ext",
    "exec_utils",
    "elevation",
    "safety",
    "version",
]
