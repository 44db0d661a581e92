"""
Unit tests for the container registry
"""
from unittest.mock import AsyncMock, Mock

import pytest

from proxmox2mqtt.core.proxmox_errors import ProxmoxConnectionError
from proxmox2mqtt.services.container_registry import ContainerInfo, ContainerRegistry


def _proxmox(containers):
    proxmox = Mock()
    proxmox.get_all_containers = AsyncMock(return_value=containers)
    return proxmox


@pytest.mark.unit
class TestContainerRegistry:
    def test_from_api_splits_tags(self):
        info = ContainerInfo.from_api({"key": "101_web", "node": "pve1", "vmid": 101, "name": "web", "tags": "prod; web"})

        assert info.vmid == "101"
        assert info.tags == ["prod", "web"]

    def test_resolve_entity_key(self, registry):
        assert registry.resolve_entity_key("101") == "101_web"
        assert registry.resolve_entity_key(102) == "102_db"
        assert registry.resolve_entity_key("999") is None

    @pytest.mark.asyncio
    async def test_refresh_reports_changes(self):
        registry = ContainerRegistry(_proxmox([
            {"key": "101_web", "node": "pve1", "vmid": 101, "name": "web"},
            {"key": "102_db", "node": "pve1", "vmid": 102, "name": "db"},
        ]))
        first = await registry.refresh()
        assert first["added"] == ["101_web", "102_db"]

        registry.proxmox = _proxmox([
            {"key": "101_web", "node": "pve2", "vmid": 101, "name": "web"},
            {"key": "103_cache", "node": "pve1", "vmid": 103, "name": "cache"},
        ])
        changes = await registry.refresh()

        assert changes == {"added": ["103_cache"], "migrated": ["101_web"], "removed": ["102_db"]}
        assert registry.get("101_web").node == "pve2"
        assert registry.get("102_db") is None
        assert len(registry) == 2

    @pytest.mark.asyncio
    async def test_failed_refresh_keeps_previous_state(self, registry):
        registry.proxmox = Mock()
        registry.proxmox.get_all_containers = AsyncMock(side_effect=ProxmoxConnectionError("down"))

        with pytest.raises(ProxmoxConnectionError):
            await registry.refresh()

        assert len(registry) == 2
