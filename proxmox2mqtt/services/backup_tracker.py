"""
Backup task tracking for Proxmox2MQTT.

Follows vzdump tasks from the moment they show up as active on a node until
they stop (or vanish), publishing one retained status message per container
whenever the parsed state of that container changes.

Lifecycle of a tracked task:
- created by the scan (active task not tracked yet) or by a manual backup
- refreshed on every check: status, log analysis, publish on change
- removed once the task stopped, or when its status could not be read for
  longer than the absence / error timeouts
"""

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import structlog

from proxmox2mqtt.config import Settings, settings
from proxmox2mqtt.core.proxmox_errors import describe_exit_status, is_task_success
from proxmox2mqtt.services.backup_log_parser import (
    STATUS_COMPLETED,
    STATUS_ERROR,
    STATUS_RUNNING,
    EntityBackupRecord,
    LogLine,
    parse_backup_log,
    segment_logs,
)
from proxmox2mqtt.services.container_registry import ContainerInfo
from proxmox2mqtt.utils.datetime_utils import utc_now_iso

logger = structlog.get_logger()

TASK_STATUS_RUNNING = "running"
TASK_STATUS_STOPPED = "stopped"

PROGRESS_LABELS = {
    STATUS_RUNNING: "in progress",
    STATUS_COMPLETED: "success",
    STATUS_ERROR: "failed",
}

TaskKey = Tuple[str, str]


@dataclass
class TrackedTask:
    """One vzdump task being followed, keyed by (node, task_id)."""

    node: str
    task_id: str
    start_time: Optional[float]
    status: str
    last_check: float
    entity_id: Optional[str] = None
    source: str = "scan"
    published: Set[str] = field(default_factory=set)
    last_status: Dict[str, str] = field(default_factory=dict)  # vmid -> status

    @property
    def key(self) -> TaskKey:
        return (self.node, self.task_id)

    def publication_key(self, vmid: str) -> str:
        return f"{self.task_id}_{vmid}"

    def should_publish(self, vmid: str, status: str) -> bool:
        """True if this guest was never published for this task or its status changed."""
        return (
            self.publication_key(vmid) not in self.published
            or self.last_status.get(vmid) != status
        )

    def record_published(self, vmid: str, status: str) -> None:
        self.published.add(self.publication_key(vmid))
        self.last_status[vmid] = status

    def to_dict(self) -> Dict[str, Any]:
        return {
            "node": self.node,
            "task_id": self.task_id,
            "entity_id": self.entity_id,
            "source": self.source,
            "status": self.status,
            "start_time": self.start_time,
            "last_check": self.last_check,
            "guests": dict(self.last_status),
        }


def build_backup_status_payload(
    vmid: str,
    record: EntityBackupRecord,
    task_id: Optional[str],
    node: Optional[str],
    progress: Optional[str] = None,
) -> Dict[str, Any]:
    """Serialize a parsed record to the retained ``backup_status`` JSON payload."""
    return {
        "status": record.status,
        "progress": progress or PROGRESS_LABELS.get(record.status, "unknown"),
        "task_id": task_id,
        "vmid": str(vmid),
        "node": node,
        "start_time": record.start_time,
        "end_time": record.end_time,
        "result": record.result,
        "size_gib": record.size,
        "total_size_gib": record.total_size,
        "duration": record.duration,
        "duration_seconds": record.duration_seconds,
        "speed": record.speed,
        "compression": record.compression,
        "compression_ratio": record.compression_ratio,
        "error": record.error,
        "timestamp": utc_now_iso(),
    }


class BackupTracker:
    """Owns the table of tracked backup tasks and its scan/reconcile logic"""

    def __init__(
        self,
        proxmox_api,
        mqtt,
        registry,
        settings_obj: Settings = settings,
        clock: Callable[[], float] = time.time,
    ):
        self.proxmox = proxmox_api
        self.mqtt = mqtt
        self.registry = registry
        self.settings = settings_obj
        self.clock = clock
        self.active_backups: Dict[TaskKey, TrackedTask] = {}

    def __len__(self) -> int:
        return len(self.active_backups)

    def __contains__(self, key: TaskKey) -> bool:
        return key in self.active_backups

    def list_tracked(self) -> List[Dict[str, Any]]:
        return [task.to_dict() for task in self.active_backups.values()]

    # ------------------------------------------------------------------
    # Tracking table
    # ------------------------------------------------------------------

    def track_task(
        self,
        node: str,
        task_id: str,
        entity_id: Optional[str] = None,
        start_time: Optional[float] = None,
        status: str = TASK_STATUS_RUNNING,
        source: str = "scan",
    ) -> TrackedTask:
        """Start tracking a task. Returns the existing entry if already tracked."""
        key = (node, task_id)
        existing = self.active_backups.get(key)
        if existing is not None:
            return existing

        if entity_id is not None:
            self._evict_superseded(str(entity_id), key)

        task = TrackedTask(
            node=node,
            task_id=task_id,
            start_time=start_time,
            status=status or TASK_STATUS_RUNNING,
            last_check=self.clock(),
            entity_id=str(entity_id) if entity_id is not None else None,
            source=source,
        )
        self.active_backups[key] = task
        logger.info(
            "Tracking backup task",
            node=node,
            task_id=task_id,
            vmid=task.entity_id,
            source=source,
        )
        return task

    def _evict_superseded(self, entity_id: str, new_key: TaskKey) -> None:
        for key, task in list(self.active_backups.items()):
            if key != new_key and task.entity_id == entity_id:
                logger.info(
                    "Replacing superseded backup task",
                    vmid=entity_id,
                    old_task_id=task.task_id,
                    new_task_id=new_key[1],
                )
                self.active_backups.pop(key, None)

    def remove_completed_backups(self, keys: List[TaskKey]) -> None:
        for key in keys:
            if self.active_backups.pop(key, None) is not None:
                logger.debug("Stopped tracking backup task", node=key[0], task_id=key[1])

    # ------------------------------------------------------------------
    # Scan
    # ------------------------------------------------------------------

    async def scan_for_new_backups(self) -> int:
        """
        Track every active vzdump task not tracked yet and analyse it right away.

        Returns:
            Number of newly tracked tasks
        """
        try:
            active_tasks = await self.proxmox.list_active_backup_tasks()
        except Exception as e:
            logger.error("Failed to list active backup tasks", error=str(e))
            return 0

        logger.debug("Backup scan", active_tasks=len(active_tasks))

        new_count = 0
        for active in active_tasks:
            if (active.node, active.task_id) in self.active_backups:
                continue
            try:
                task = self.track_task(
                    active.node,
                    active.task_id,
                    entity_id=active.entity_id,
                    start_time=active.start_time,
                    status=active.status,
                )
                new_count += 1
                await self.analyze_backup_logs(task)
            except Exception as e:
                logger.error(
                    "Failed to start tracking backup task",
                    node=active.node,
                    task_id=active.task_id,
                    error=str(e),
                )
        return new_count

    # ------------------------------------------------------------------
    # Log analysis and publishing
    # ------------------------------------------------------------------

    async def _fetch_segments(self, task: TrackedTask) -> Dict[str, List[LogLine]]:
        logs = await self.proxmox.get_task_log(task.node, task.task_id)
        if not logs:
            logger.debug("Backup task log still empty", task_id=task.task_id)
            return {}
        return segment_logs(logs)

    async def analyze_backup_logs(self, task: TrackedTask) -> None:
        """Fetch the task log and publish every guest whose status changed."""
        try:
            segments = await self._fetch_segments(task)
        except Exception as e:
            logger.error("Backup log analysis failed", task_id=task.task_id, error=str(e))
            return

        for vmid, lines in segments.items():
            self.process_entity_logs(vmid, lines, task)

        task.last_check = self.clock()

    def process_entity_logs(self, vmid: str, lines: List[LogLine], task: TrackedTask) -> bool:
        """
        Parse one guest's segment and publish it if its status changed.

        Returns:
            True if a message was published
        """
        record = parse_backup_log(lines)

        if not task.should_publish(vmid, record.status):
            return False

        container_key = self.registry.resolve_entity_key(vmid)
        if container_key is None:
            # Not marked as published: retried once the registry knows the guest
            logger.info("Skipping backup status of unknown guest", vmid=vmid, status=record.status)
            return False

        if not self.publish_entity_backup_status(vmid, record, task, container_key):
            return False

        task.record_published(vmid, record.status)
        return True

    def publish_entity_backup_status(
        self,
        vmid: str,
        record: EntityBackupRecord,
        task: TrackedTask,
        container_key: str,
        progress: Optional[str] = None,
    ) -> bool:
        payload = build_backup_status_payload(vmid, record, task.task_id, task.node, progress)
        published = self.mqtt.publish_backup_status(container_key, payload)
        if published:
            logger.info(
                "Published backup status",
                vmid=vmid,
                container=container_key,
                status=record.status,
                duration=record.duration,
            )
        else:
            logger.warning(
                "Backup status not published",
                vmid=vmid,
                container=container_key,
                status=record.status,
            )
        return published

    # ------------------------------------------------------------------
    # Reconcile
    # ------------------------------------------------------------------

    async def check_active_backups(self) -> List[TaskKey]:
        """
        Refresh every tracked task and drop the finished or stale ones.

        Removal happens after the loop so every task in one cycle sees the
        same table.

        Returns:
            Keys of the tasks removed in this cycle
        """
        now = self.clock()
        to_remove: List[TaskKey] = []

        for key, task in list(self.active_backups.items()):
            try:
                await self.check_single_backup_task(key, task, now, to_remove)
            except Exception as e:
                logger.error(
                    "Backup task check failed",
                    node=task.node,
                    task_id=task.task_id,
                    error=str(e),
                )
                if now - task.last_check > self.settings.backup_error_timeout:
                    logger.warning(
                        "Backup task unreachable for too long, dropping it",
                        task_id=task.task_id,
                        timeout=self.settings.backup_error_timeout,
                    )
                    to_remove.append(key)

        self.remove_completed_backups(to_remove)
        return to_remove

    async def check_single_backup_task(
        self,
        key: TaskKey,
        task: TrackedTask,
        now: float,
        to_remove: List[TaskKey],
    ) -> None:
        task_status = await self.proxmox.get_task_status(task.node, task.task_id)

        if task_status is None:
            if now - task.last_check > self.settings.backup_absence_timeout:
                logger.warning(
                    "Backup task status missing, dropping it",
                    task_id=task.task_id,
                    timeout=self.settings.backup_absence_timeout,
                )
                to_remove.append(key)
            return

        task.status = task_status.status
        task.last_check = now
        await self.analyze_backup_logs(task)

        if task_status.status != TASK_STATUS_STOPPED:
            return

        logger.info(
            "Backup task finished",
            task_id=task.task_id,
            exit_status=task_status.exit_status,
        )
        if not is_task_success(task_status.exit_status):
            await self.handle_task_interruption(task, task_status.exit_status)
        to_remove.append(key)

    async def handle_task_interruption(self, task: TrackedTask, exit_status: str) -> None:
        """
        Mark every unfinished guest of an abnormally stopped task as failed.

        Failed guests are published even if their status did not change; guests
        that already completed keep the usual publish-on-change behaviour.
        """
        logger.warning(
            "Backup task stopped abnormally",
            task_id=task.task_id,
            exit_status=exit_status,
            reason=describe_exit_status(exit_status),
        )

        try:
            segments = await self._fetch_segments(task)
        except Exception as e:
            logger.error("Failed to handle task interruption", task_id=task.task_id, error=str(e))
            return

        for vmid, lines in segments.items():
            container_key = self.registry.resolve_entity_key(vmid)
            if container_key is None:
                logger.debug("Skipping interrupted backup of unknown guest", vmid=vmid)
                continue

            record = parse_backup_log(lines)
            if record.status == STATUS_COMPLETED:
                if task.should_publish(vmid, record.status):
                    if self.publish_entity_backup_status(vmid, record, task, container_key):
                        task.record_published(vmid, record.status)
                continue

            record.mark_interrupted(exit_status)
            if self.publish_entity_backup_status(vmid, record, task, container_key):
                task.record_published(vmid, record.status)
            logger.info("Backup marked failed after interruption", vmid=vmid, container=container_key)

    # ------------------------------------------------------------------
    # Manual backups
    # ------------------------------------------------------------------

    async def start_backup(self, container: ContainerInfo) -> str:
        """
        Start a backup of one container and track it immediately.

        Returns:
            UPID of the vzdump task

        Raises:
            The API error when the backup could not be started; an ``error``
            status is published for the container first.
        """
        try:
            task_id = await self.proxmox.start_backup(
                container.node,
                container.vmid,
                **self.settings.get_backup_options(),
            )
        except Exception as e:
            logger.error("Failed to start backup", container=container.key, error=str(e))
            now = self.clock()
            record = EntityBackupRecord(
                status=STATUS_ERROR,
                error=str(e),
                start_time=now,
                end_time=now,
            )
            self.mqtt.publish_backup_status(
                container.key,
                build_backup_status_payload(container.vmid, record, None, container.node),
            )
            raise

        task = self.track_task(
            container.node,
            task_id,
            entity_id=container.vmid,
            start_time=self.clock(),
            source="manual",
        )

        record = EntityBackupRecord(start_time=task.start_time)
        if self.publish_entity_backup_status(
            container.vmid, record, task, container.key, progress="started"
        ):
            task.record_published(container.vmid, record.status)

        return task_id
