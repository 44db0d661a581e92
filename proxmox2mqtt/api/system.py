from fastapi import APIRouter, Request

from proxmox2mqtt.config import settings

router = APIRouter(tags=["system"])


@router.get("/info")
async def get_system_info(request: Request):
    """Get bridge version and connection state"""
    state = request.app.state
    return {
        "app_version": settings.app_version,
        "proxmox_connected": bool(state.proxmox.is_connected),
        "mqtt_connected": state.mqtt.is_connected(),
        "tracked_tasks": len(state.tracker),
        "containers": len(state.registry),
    }
