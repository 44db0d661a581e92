from fastapi import FastAPI, Request
import asyncio
import logging
import structlog
import uvicorn
from dotenv import load_dotenv

# Load environment variables before settings are read
load_dotenv()

from proxmox2mqtt.api import backups, system
from proxmox2mqtt.config import build_mqtt_runtime_config, settings, validate_settings
from proxmox2mqtt.core.proxmox_api import ProxmoxAPI
from proxmox2mqtt.services.backup_tracker import BackupTracker
from proxmox2mqtt.services.command_handler import CommandHandler
from proxmox2mqtt.services.container_registry import ContainerRegistry
from proxmox2mqtt.services.mqtt_service import mqtt_service
from proxmox2mqtt.services.schedulers import BackupMonitorScheduler, RegistryRefreshScheduler

# Configure structured logging
log_level = settings.log_level.upper()
logging.basicConfig(level=getattr(logging, log_level, logging.INFO))

structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.dev.ConsoleRenderer() if log_level == "DEBUG" else structlog.processors.JSONRenderer()
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()

proxmox_api = ProxmoxAPI(settings)
registry = ContainerRegistry(proxmox_api)
tracker = BackupTracker(proxmox_api, mqtt_service, registry, settings)
command_handler = CommandHandler(proxmox_api, registry, tracker, settings.mqtt_base_topic)
backup_monitor = BackupMonitorScheduler(tracker, settings.proxmox_backup_check_interval)
registry_refresher = RegistryRefreshScheduler(registry, settings.refresh_interval)

app = FastAPI(
    title="Proxmox2MQTT",
    description="Bridge between a Proxmox VE cluster and an MQTT broker",
    version=settings.app_version,
)
app.state.proxmox = proxmox_api
app.state.registry = registry
app.state.tracker = tracker
app.state.mqtt = mqtt_service

app.include_router(backups.router, prefix="/api/backups", tags=["Backups"])
app.include_router(system.router, prefix="/api/system", tags=["System"])


@app.on_event("startup")
async def startup_event():
    """Connect to Proxmox and the broker, then start the background loops"""
    logger.info("Starting Proxmox2MQTT", version=settings.app_version)
    validate_settings(settings)

    try:
        await proxmox_api.connect()
    except Exception as e:
        # Requests reconnect lazily, the loops keep retrying
        logger.error("Failed to connect to Proxmox", error=str(e))

    try:
        await registry.refresh()
    except Exception as e:
        logger.error("Initial container discovery failed", error=str(e))

    mqtt_service.set_command_handler(command_handler.handle_command, asyncio.get_running_loop())
    try:
        mqtt_service.configure(build_mqtt_runtime_config(settings))
    except ValueError as e:
        logger.error("Invalid MQTT configuration", error=str(e))

    asyncio.create_task(backup_monitor.start())
    asyncio.create_task(registry_refresher.start())

    logger.info("Proxmox2MQTT started successfully")


@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup on application shutdown"""
    logger.info("Shutting down Proxmox2MQTT")
    backup_monitor.stop()
    registry_refresher.stop()
    mqtt_service.disconnect()
    await proxmox_api.close()


@app.get("/health")
async def health_check(request: Request):
    """Health check endpoint for container orchestration"""
    return {
        "status": "healthy",
        "service": "proxmox2mqtt",
        "mqtt_connected": request.app.state.mqtt.is_connected(),
        "tracked_tasks": len(request.app.state.tracker),
    }


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all requests"""
    logger.info(
        "request_received",
        method=request.method,
        path=request.url.path,
        client_ip=request.client.host if request.client else None
    )

    response = await call_next(request)

    if response.status_code >= 400:
        logger.warning(
            "request_failed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code
        )
    else:
        logger.info(
            "request_completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code
        )

    return response


def run():
    """Console entry point"""
    uvicorn.run(
        "proxmox2mqtt.main:app",
        host=settings.host,
        port=settings.port,
        log_level=log_level.lower(),
    )


if __name__ == "__main__":
    run()
