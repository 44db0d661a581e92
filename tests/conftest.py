"""
Pytest configuration and fixtures for Proxmox2MQTT tests
"""
import os
import sys
from unittest.mock import AsyncMock, Mock

import pytest

# Set up test environment variables BEFORE importing proxmox2mqtt modules
os.environ["ENVIRONMENT"] = "test"
os.environ.setdefault("PROXMOX_HOST", "pve.test")
os.environ.setdefault("PROXMOX_TOKEN_ID", "root@pam!test")
os.environ.setdefault("PROXMOX_TOKEN_SECRET", "secret")
os.environ.setdefault("MQTT_BROKER", "mqtt://broker.test:1883")

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from proxmox2mqtt.config import Settings
from proxmox2mqtt.services.container_registry import ContainerInfo, ContainerRegistry


def pytest_configure(config):
    """Register custom markers"""
    config.addinivalue_line(
        "markers", "unit: Unit tests that don't require external dependencies"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests that require running services"
    )


@pytest.fixture
def test_settings():
    return Settings(
        proxmox_host="pve.test",
        proxmox_token_id="root@pam!test",
        proxmox_token_secret="secret",
        mqtt_broker="mqtt://broker.test:1883",
        backup_absence_timeout=60,
        backup_error_timeout=300,
    )


@pytest.fixture
def registry():
    registry = ContainerRegistry()
    registry.add(ContainerInfo(key="101_web", node="pve1", vmid="101", name="web"))
    registry.add(ContainerInfo(key="102_db", node="pve1", vmid="102", name="db"))
    return registry


@pytest.fixture
def mock_proxmox():
    proxmox = Mock()
    proxmox.list_active_backup_tasks = AsyncMock(return_value=[])
    proxmox.get_task_status = AsyncMock(return_value=None)
    proxmox.get_task_log = AsyncMock(return_value=[])
    proxmox.start_backup = AsyncMock()
    proxmox.start_container = AsyncMock()
    proxmox.stop_container = AsyncMock()
    proxmox.reboot_container = AsyncMock()
    proxmox.restart_node = AsyncMock()
    proxmox.shutdown_node = AsyncMock()
    proxmox.is_connected = True
    return proxmox


@pytest.fixture
def mock_mqtt():
    mqtt = Mock()
    mqtt.publish_backup_status = Mock(return_value=True)
    mqtt.is_connected = Mock(return_value=True)
    return mqtt
