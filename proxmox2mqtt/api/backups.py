from fastapi import APIRouter, Depends, HTTPException, Request, status
import structlog

from proxmox2mqtt.core.proxmox_errors import ProxmoxError

logger = structlog.get_logger()
router = APIRouter()


def get_tracker(request: Request):
    return request.app.state.tracker


def get_registry(request: Request):
    return request.app.state.registry


@router.get("")
async def list_backups(tracker=Depends(get_tracker)):
    """Backup tasks currently being tracked"""
    tasks = tracker.list_tracked()
    return {"count": len(tasks), "tasks": tasks}


@router.post("/{container_key}", status_code=status.HTTP_202_ACCEPTED)
async def start_backup(
    container_key: str,
    tracker=Depends(get_tracker),
    registry=Depends(get_registry),
):
    """Start a manual backup of one container"""
    container = registry.get(container_key)
    if container is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Container {container_key} not found",
        )

    try:
        task_id = await tracker.start_backup(container)
    except ProxmoxError as e:
        logger.error("Manual backup failed", container=container_key, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Failed to start backup: {e}",
        )

    return {
        "container": container_key,
        "node": container.node,
        "vmid": container.vmid,
        "task_id": task_id,
    }
