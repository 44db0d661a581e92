"""
Registry of the LXC containers exposed to Home Assistant.

Maps the stable container key ("<vmid>_<name>") to the node currently hosting
the container. Refreshed periodically from the cluster so migrations, new and
deleted containers are picked up.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import structlog

logger = structlog.get_logger()


@dataclass
class ContainerInfo:
    key: str
    node: str
    vmid: str
    name: str = ""
    tags: List[str] = field(default_factory=list)

    @classmethod
    def from_api(cls, container: Dict[str, Any]) -> "ContainerInfo":
        tags = container.get("tags") or ""
        return cls(
            key=container["key"],
            node=container["node"],
            vmid=str(container["vmid"]),
            name=container.get("name") or "",
            tags=[tag.strip() for tag in tags.split(";") if tag.strip()],
        )


class ContainerRegistry:
    """Container key -> ContainerInfo, plus lookup by vmid"""

    def __init__(self, proxmox_api=None):
        self.proxmox = proxmox_api
        self.containers: Dict[str, ContainerInfo] = {}

    def __len__(self) -> int:
        return len(self.containers)

    def get(self, key: str) -> Optional[ContainerInfo]:
        return self.containers.get(key)

    def add(self, info: ContainerInfo) -> None:
        self.containers[info.key] = info

    def resolve_entity_key(self, vmid: Any) -> Optional[str]:
        """Container key for a vmid, or None if the guest is not tracked."""
        vmid = str(vmid)
        for key, info in self.containers.items():
            if info.vmid == vmid:
                return key
        return None

    async def refresh(self) -> Dict[str, List[str]]:
        """
        Reload the container list from the cluster.

        The map is replaced in one step once the listing succeeded, so a failed
        refresh keeps the previous state.

        Returns:
            dict with added, migrated and removed container keys
        """
        containers = await self.proxmox.get_all_containers()
        new_map: Dict[str, ContainerInfo] = {}
        changes: Dict[str, List[str]] = {"added": [], "migrated": [], "removed": []}

        for container in containers:
            info = ContainerInfo.from_api(container)
            new_map[info.key] = info

            existing = self.containers.get(info.key)
            if existing is None:
                logger.info("New container detected", key=info.key, node=info.node)
                changes["added"].append(info.key)
            elif existing.node != info.node:
                logger.info(
                    "Container migration detected",
                    key=info.key,
                    from_node=existing.node,
                    to_node=info.node,
                )
                changes["migrated"].append(info.key)

        for key in self.containers:
            if key not in new_map:
                logger.info("Container removed", key=key)
                changes["removed"].append(key)

        self.containers = new_map
        logger.info("Container registry refreshed", containers=len(new_map))
        return changes
