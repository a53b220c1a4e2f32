"""NetGuard package entrypoint.

This module only exposes top-level submodules so callers can import from
`netguard` directly when building scripts or tests.
"""

__all__ = [
    "config",
    "models",
    "errors",
    "state_store",
    "checker",
    "runner",
    "scheduler",
    "dispatcher",
    "target_source",
    "notifier",
    "engine",
    "supervisor",
    "host",
    "runtime_status",
    "app",
    "main",
]
