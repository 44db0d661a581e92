"""
Async client for the Proxmox VE REST API (``/api2/json``).

Only the calls the bridge needs: node and container listing, container and
node power actions, and the vzdump task endpoints used for backup tracking.
"""

import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx
import structlog

from proxmox2mqtt.config import Settings, settings
from proxmox2mqtt.core.proxmox_errors import (
    BackupStartError,
    ProxmoxAPIError,
    ProxmoxConnectionError,
    ProxmoxNotFoundError,
)
from proxmox2mqtt.services.backup_log_parser import LogLine

logger = structlog.get_logger()

HA_IGNORE_TAG = "ha-ignore"
LOG_PAGE_SIZE = 1000


@dataclass
class BackupTask:
    """An active vzdump task as listed by the cluster."""

    node: str
    task_id: str
    entity_id: Optional[str]
    start_time: Optional[float]
    status: str = "running"


@dataclass
class TaskStatus:
    status: str
    exit_status: Optional[str] = None


def create_container_key(container: Dict[str, Any]) -> str:
    """Stable key "<vmid>_<name>" with the name lowercased and non-alphanumerics squashed to "_"."""
    name = str(container.get("name") or f"ct{container.get('vmid')}").lower()
    name = re.sub(r"[^a-z0-9]", "_", name)
    name = re.sub(r"_+", "_", name)
    return f"{container.get('vmid')}_{name}"


def _has_ignore_tag(container: Dict[str, Any]) -> bool:
    tags = container.get("tags") or ""
    return any(tag.strip() == HA_IGNORE_TAG for tag in tags.split(";"))


class ProxmoxAPI:
    """Thin async wrapper around the Proxmox REST API"""

    def __init__(self, settings_obj: Settings = settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings_obj
        self._transport = transport
        self.client: Optional[httpx.AsyncClient] = None
        self.is_connected = False

    @property
    def base_url(self) -> str:
        return f"https://{self.settings.proxmox_host}:{self.settings.proxmox_port}/api2/json"

    def _uses_token(self) -> bool:
        return bool(self.settings.proxmox_token_id and self.settings.proxmox_token_secret)

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    async def connect(self):
        """Create the HTTP client and authenticate."""
        logger.info(
            "Connecting to Proxmox",
            host=self.settings.proxmox_host,
            port=self.settings.proxmox_port,
            auth="token" if self._uses_token() else "ticket",
        )

        headers = {}
        if self._uses_token():
            headers["Authorization"] = (
                f"PVEAPIToken={self.settings.proxmox_token_id}={self.settings.proxmox_token_secret}"
            )

        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            verify=self.settings.proxmox_verify_ssl,
            timeout=float(self.settings.proxmox_timeout),
            headers=headers,
            transport=self._transport,
        )

        if not self._uses_token():
            await self.authenticate()

        self.is_connected = True
        logger.info("Connected to Proxmox")

    async def authenticate(self):
        """Obtain a PVEAuthCookie ticket with username/password."""
        try:
            response = await self.client.post(
                "/access/ticket",
                data={
                    "username": f"{self.settings.proxmox_user}@{self.settings.proxmox_realm}",
                    "password": self.settings.proxmox_password,
                },
            )
        except httpx.TransportError as e:
            raise ProxmoxConnectionError(f"Proxmox unreachable: {e}") from e

        if response.status_code != 200:
            raise ProxmoxAPIError(
                "Proxmox authentication failed",
                status_code=response.status_code,
                endpoint="/access/ticket",
            )

        data = (response.json() or {}).get("data") or {}
        ticket = data.get("ticket")
        if not ticket:
            raise ProxmoxAPIError("Invalid authentication response", endpoint="/access/ticket")

        self.client.headers["Cookie"] = f"PVEAuthCookie={ticket}"
        csrf_token = data.get("CSRFPreventionToken")
        if csrf_token:
            self.client.headers["CSRFPreventionToken"] = csrf_token
        logger.info("Proxmox authentication successful", user=self.settings.proxmox_user)

    async def close(self):
        if self.client:
            await self.client.aclose()
        self.client = None
        self.is_connected = False
        logger.info("Disconnected from Proxmox")

    async def _request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Issue a request and return the ``data`` member of the JSON body."""
        if self.client is None:
            await self.connect()

        try:
            response = await self.client.request(method, endpoint, params=params, data=data)
        except httpx.TransportError as e:
            self.is_connected = False
            logger.warning("Proxmox request failed", endpoint=endpoint, error=str(e))
            raise ProxmoxConnectionError(f"{method} {endpoint} failed: {e}") from e

        if response.status_code == 404:
            raise ProxmoxNotFoundError(
                f"{endpoint} not found", status_code=404, endpoint=endpoint
            )
        if response.status_code >= 400:
            raise ProxmoxAPIError(
                f"{method} {endpoint} returned {response.status_code}: {response.reason_phrase}",
                status_code=response.status_code,
                endpoint=endpoint,
            )

        self.is_connected = True
        body = response.json() or {}
        return body.get("data")

    # ------------------------------------------------------------------
    # Nodes and containers
    # ------------------------------------------------------------------

    async def get_nodes(self) -> List[Dict[str, Any]]:
        return await self._request("GET", "/nodes") or []

    async def get_containers(self, node: str) -> List[Dict[str, Any]]:
        """LXC containers on a node, without ``ha-ignore`` tagged ones, each with a ``key``."""
        containers = await self._request("GET", f"/nodes/{node}/lxc") or []
        result = []
        for container in containers:
            if _has_ignore_tag(container):
                continue
            container = dict(container)
            container["key"] = create_container_key(container)
            container["node"] = node
            result.append(container)
        return result

    async def get_all_containers(self) -> List[Dict[str, Any]]:
        """All tracked containers across the cluster. A failing node is skipped."""
        all_containers = []
        for node in await self.get_nodes():
            node_name = node.get("node")
            try:
                all_containers.extend(await self.get_containers(node_name))
            except (ProxmoxAPIError, ProxmoxConnectionError) as e:
                logger.warning("Failed to list containers on node", node=node_name, error=str(e))
        return all_containers

    async def find_container(self, vmid: Any) -> Optional[Dict[str, Any]]:
        """Locate a container anywhere in the cluster (after a migration)."""
        for container in await self.get_all_containers():
            if str(container.get("vmid")) == str(vmid):
                logger.info("Container found", vmid=vmid, node=container["node"])
                return container
        logger.warning("Container not found on any node", vmid=vmid)
        return None

    async def _container_action(self, node: str, vmid: Any, action: str) -> Any:
        result = await self._request("POST", f"/nodes/{node}/lxc/{vmid}/status/{action}")
        logger.info("Container action requested", node=node, vmid=vmid, action=action)
        return result

    async def start_container(self, node: str, vmid: Any) -> Any:
        return await self._container_action(node, vmid, "start")

    async def stop_container(self, node: str, vmid: Any) -> Any:
        return await self._container_action(node, vmid, "stop")

    async def reboot_container(self, node: str, vmid: Any) -> Any:
        return await self._container_action(node, vmid, "reboot")

    async def _node_command(self, node: str, command: str) -> Any:
        result = await self._request("POST", f"/nodes/{node}/status", data={"command": command})
        logger.info("Node command requested", node=node, command=command)
        return result

    async def restart_node(self, node: str) -> Any:
        return await self._node_command(node, "reboot")

    async def shutdown_node(self, node: str) -> Any:
        return await self._node_command(node, "shutdown")

    # ------------------------------------------------------------------
    # Backup tasks
    # ------------------------------------------------------------------

    @staticmethod
    def _task_path(node: str, upid: str) -> str:
        return f"/nodes/{node}/tasks/{quote(upid, safe='')}"

    async def list_active_backup_tasks(self) -> List[BackupTask]:
        """Running vzdump tasks on every node."""
        tasks: List[BackupTask] = []
        for node in await self.get_nodes():
            node_name = node.get("node")
            try:
                entries = await self._request(
                    "GET",
                    f"/nodes/{node_name}/tasks",
                    params={"source": "active", "typefilter": "vzdump"},
                ) or []
            except (ProxmoxAPIError, ProxmoxConnectionError) as e:
                logger.warning("Failed to list active tasks on node", node=node_name, error=str(e))
                continue

            for entry in entries:
                if entry.get("type", "vzdump") != "vzdump" or not entry.get("upid"):
                    continue
                entity_id = entry.get("id")
                tasks.append(
                    BackupTask(
                        node=entry.get("node") or node_name,
                        task_id=entry["upid"],
                        entity_id=str(entity_id) if entity_id else None,
                        start_time=entry.get("starttime"),
                        status=entry.get("status") or "running",
                    )
                )
        return tasks

    async def get_task_status(self, node: str, upid: str) -> Optional[TaskStatus]:
        """Current status of a task, or None if the node no longer knows it."""
        try:
            data = await self._request("GET", f"{self._task_path(node, upid)}/status")
        except ProxmoxNotFoundError:
            logger.debug("Task status not found", node=node, task_id=upid)
            return None

        if not data:
            return None
        return TaskStatus(status=data.get("status", "running"), exit_status=data.get("exitstatus"))

    async def get_task_log(self, node: str, upid: str) -> List[LogLine]:
        """Full log of a task, fetched page by page."""
        lines: List[LogLine] = []
        start = 0
        while True:
            page = await self._request(
                "GET",
                f"{self._task_path(node, upid)}/log",
                params={"start": start, "limit": LOG_PAGE_SIZE},
            ) or []
            # An empty log is reported as a single "no content" line
            if len(page) == 1 and page[0].get("t") == "no content":
                break
            lines.extend(LogLine.from_api(entry) for entry in page)
            if len(page) < LOG_PAGE_SIZE:
                break
            start += len(page)
        return lines

    async def start_backup(self, node: str, vmid: Any, **options: Any) -> str:
        """
        Start a vzdump backup of one guest.

        Returns:
            UPID of the created task

        Raises:
            BackupStartError: the API did not return a task id
        """
        payload = {"vmid": str(vmid)}
        payload.update({key: value for key, value in options.items() if value is not None})
        upid = await self._request("POST", f"/nodes/{node}/vzdump", data=payload)

        if not isinstance(upid, str) or not upid.startswith("UPID:"):
            raise BackupStartError(f"Invalid vzdump response for VM {vmid}: {upid!r}")

        logger.info("Backup started", node=node, vmid=vmid, task_id=upid)
        return upid
