"""
Proxmox API error types and task exit status mappings

Exceptions raised by the cluster API client, plus human-readable
descriptions for the ``exitstatus`` field of finished Proxmox tasks.

Reference: https://pve.proxmox.com/pve-docs/api-viewer/#/nodes/{node}/tasks/{upid}/status
"""
from typing import Optional

# Success sentinel reported by Proxmox for a cleanly finished task
TASK_EXIT_OK = "OK"

# Known exit status prefixes
TASK_EXIT_STATUSES = {
    "OK": "Task finished successfully",
    "WARNINGS": "Task finished with warnings",
    "unexpected status": "Task ended unexpectedly (worker killed or node rebooted)",
    "interrupted by signal": "Task was aborted by the user or by a signal",
    "job errors": "One or more guests failed to back up",
}


class ProxmoxError(Exception):
    """Base class for all Proxmox client errors"""


class ProxmoxConnectionError(ProxmoxError):
    """Transport level failure (DNS, refused connection, timeout)"""


class ProxmoxAPIError(ProxmoxError):
    """The API answered with an error status"""

    def __init__(self, message: str, status_code: Optional[int] = None, endpoint: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.endpoint = endpoint


class ProxmoxNotFoundError(ProxmoxAPIError):
    """Task, container or node does not exist (anymore) on the target node"""


class BackupStartError(ProxmoxError):
    """vzdump was requested but the API did not return a task id"""


def is_task_success(exit_status: Optional[str]) -> bool:
    """
    Check whether a task exit status means success

    A missing exit status is not treated as a failure; only an explicit,
    non-OK value is.
    """
    if not exit_status:
        return True
    return exit_status == TASK_EXIT_OK


def describe_exit_status(exit_status: Optional[str]) -> str:
    """
    Get a human-readable description for a task exit status

    Args:
        exit_status: Raw ``exitstatus`` value (e.g. "OK", "WARNINGS: 2")

    Returns:
        Description suitable for log lines
    """
    if not exit_status:
        return "Unknown exit status"

    for prefix, description in TASK_EXIT_STATUSES.items():
        if exit_status.startswith(prefix):
            return description

    return f"Task failed ({exit_status})"
