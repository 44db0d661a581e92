"""
Inbound MQTT commands.

    <base>/lxc/<container_key>/command   {"action": "start|stop|reboot|backup"}
    <base>/nodes/<node>/command          {"action": "restart|shutdown"}

Bad payloads and failing actions are logged and dropped; nothing is raised
back to the caller.
"""

import json
from typing import Optional, Tuple

import structlog

logger = structlog.get_logger()

CONTAINER_ACTIONS = ("start", "stop", "reboot", "backup")
NODE_ACTIONS = ("restart", "shutdown")


class CommandHandler:
    def __init__(self, proxmox_api, registry, tracker, base_topic: str = "proxmox2mqtt"):
        self.proxmox = proxmox_api
        self.registry = registry
        self.tracker = tracker
        self.base_topic = base_topic.rstrip("/")

    def parse_topic(self, topic: str) -> Optional[Tuple[str, str]]:
        """Return (kind, target) for a command topic, kind being "lxc" or "nodes"."""
        prefix = f"{self.base_topic}/"
        if not topic.startswith(prefix):
            return None
        parts = topic[len(prefix):].split("/")
        if len(parts) != 3 or parts[2] != "command" or parts[0] not in ("lxc", "nodes"):
            return None
        return parts[0], parts[1]

    @staticmethod
    def parse_action(payload: str) -> Optional[str]:
        try:
            data = json.loads(payload)
        except (TypeError, ValueError) as e:
            logger.warning("Invalid command payload", error=str(e))
            return None
        if not isinstance(data, dict) or not data.get("action"):
            logger.warning("Command payload without action")
            return None
        return str(data["action"])

    async def handle_command(self, topic: str, payload: str) -> bool:
        """
        Execute one command message.

        Returns:
            True if the action was executed
        """
        if not payload:
            logger.warning("Command received without payload", topic=topic)
            return False

        target = self.parse_topic(topic)
        if target is None:
            logger.warning("Unrecognized command topic", topic=topic)
            return False

        action = self.parse_action(payload)
        if action is None:
            return False

        kind, name = target
        try:
            if kind == "lxc":
                return await self._handle_container_command(name, action)
            return await self._handle_node_command(name, action)
        except Exception as e:
            logger.error("Command failed", topic=topic, action=action, error=str(e))
            return False

    async def _handle_container_command(self, container_key: str, action: str) -> bool:
        logger.info("Container command received", container=container_key, action=action)

        if action not in CONTAINER_ACTIONS:
            logger.warning("Unknown container action", container=container_key, action=action)
            return False

        container = self.registry.get(container_key)
        if container is None:
            logger.error("Container not found", container=container_key)
            return False

        if action == "start":
            await self.proxmox.start_container(container.node, container.vmid)
        elif action == "stop":
            await self.proxmox.stop_container(container.node, container.vmid)
        elif action == "reboot":
            await self.proxmox.reboot_container(container.node, container.vmid)
        else:
            await self.tracker.start_backup(container)
        return True

    async def _handle_node_command(self, node: str, action: str) -> bool:
        logger.info("Node command received", node=node, action=action)

        if action == "restart":
            await self.proxmox.restart_node(node)
        elif action == "shutdown":
            await self.proxmox.shutdown_node(node)
        else:
            logger.warning("Unknown node action", node=node, action=action)
            return False
        return True
