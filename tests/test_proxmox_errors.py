"""
Unit tests for Proxmox error handling
"""
import pytest
import sys
import os

# Add parent directory to path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from proxmox2mqtt.core.proxmox_errors import (
    TASK_EXIT_STATUSES,
    ProxmoxAPIError,
    ProxmoxError,
    ProxmoxNotFoundError,
    describe_exit_status,
    is_task_success,
)


@pytest.mark.unit
def test_task_exit_statuses_exist():
    """Test that exit status mappings are defined"""
    assert isinstance(TASK_EXIT_STATUSES, dict)
    assert "OK" in TASK_EXIT_STATUSES


@pytest.mark.unit
@pytest.mark.parametrize("exit_status,expected", [
    ("OK", True),
    (None, True),
    ("", True),
    ("WARNINGS: 1", False),
    ("job errors", False),
    ("unexpected status", False),
])
def test_is_task_success(exit_status, expected):
    assert is_task_success(exit_status) is expected


@pytest.mark.unit
def test_describe_exit_status():
    assert describe_exit_status("WARNINGS: 2") == "Task finished with warnings"
    assert describe_exit_status("interrupted by signal") == "Task was aborted by the user or by a signal"
    assert describe_exit_status("command 'zstd' failed") == "Task failed (command 'zstd' failed)"
    assert describe_exit_status(None) == "Unknown exit status"


@pytest.mark.unit
def test_error_hierarchy():
    error = ProxmoxNotFoundError("gone", status_code=404, endpoint="/nodes/pve1/tasks/x/status")

    assert isinstance(error, ProxmoxAPIError)
    assert isinstance(error, ProxmoxError)
    assert error.status_code == 404
    assert error.endpoint.endswith("/status")
