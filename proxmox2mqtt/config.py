import os
from typing import Any, Dict, Optional
from urllib.parse import urlparse

import structlog
from pydantic_settings import BaseSettings

logger = structlog.get_logger()


class Settings(BaseSettings):
    """Application settings"""

    # Application settings
    app_name: str = "Proxmox2MQTT"
    app_version: str = "1.2.0"
    debug: bool = False
    environment: str = "production"

    # Logging settings
    log_level: str = "INFO"

    # HTTP status API
    host: str = "0.0.0.0"
    port: int = 8081

    # Proxmox connection
    proxmox_host: str = ""
    proxmox_port: int = 8006
    proxmox_user: str = "root"
    proxmox_password: str = ""
    proxmox_realm: str = "pam"
    # API token auth (preferred, does not expire like a ticket does)
    proxmox_token_id: Optional[str] = None  # e.g. "root@pam!proxmox2mqtt"
    proxmox_token_secret: Optional[str] = None
    proxmox_verify_ssl: bool = False  # Proxmox ships self-signed certificates
    proxmox_timeout: int = 30  # seconds per HTTP request

    # MQTT broker
    mqtt_broker: str = "mqtt://localhost:1883"
    mqtt_username: Optional[str] = None
    mqtt_password: Optional[str] = None
    mqtt_client_id: str = "proxmox2mqtt"
    mqtt_base_topic: str = "proxmox2mqtt"
    mqtt_qos: int = 1
    mqtt_keepalive: int = 60

    # Intervals (in seconds)
    proxmox_backup_check_interval: int = 10  # scan + reconcile of backup tasks
    refresh_interval: int = 300              # container registry refresh

    # Backup tracking staleness bounds (in seconds)
    backup_absence_timeout: int = 60   # task status missing
    backup_error_timeout: int = 300    # task status lookups failing

    # Manual backup options passed to vzdump
    backup_mode: str = "snapshot"
    backup_compress: str = "zstd"
    backup_storage: Optional[str] = None

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"

    def get_backup_options(self) -> Dict[str, Any]:
        """Get vzdump options for manual backups"""
        options: Dict[str, Any] = {
            "mode": self.backup_mode,
            "compress": self.backup_compress,
        }
        if self.backup_storage:
            options["storage"] = self.backup_storage
        return options


def parse_broker_url(broker: str, default_port: int = 1883) -> Dict[str, Any]:
    """
    Split an MQTT broker URL into host, port and TLS flag

    Accepts "mqtt://host:1883", "mqtts://host" or a bare "host[:port]".
    """
    if "://" not in broker:
        broker = f"mqtt://{broker}"

    parsed = urlparse(broker)
    tls_enabled = parsed.scheme in ("mqtts", "ssl")
    port = parsed.port or (8883 if tls_enabled else default_port)
    return {
        "broker_url": parsed.hostname,
        "broker_port": port,
        "tls_enabled": tls_enabled,
    }


def build_mqtt_runtime_config(settings_obj: Settings) -> Dict[str, Any]:
    """Build runtime MQTT config from settings."""
    broker = parse_broker_url(settings_obj.mqtt_broker)
    return {
        "enabled": bool(broker["broker_url"]),
        "broker_url": broker["broker_url"],
        "broker_port": broker["broker_port"],
        "tls_enabled": broker["tls_enabled"],
        "username": settings_obj.mqtt_username,
        "password": settings_obj.mqtt_password,
        "client_id": settings_obj.mqtt_client_id,
        "base_topic": settings_obj.mqtt_base_topic,
        "qos": settings_obj.mqtt_qos,
        "keepalive": settings_obj.mqtt_keepalive,
    }


# Create settings instance
settings = Settings()

# Environment-specific overrides
if settings.environment == "development":
    settings.debug = True
    settings.log_level = os.getenv("LOG_LEVEL", "DEBUG")


def validate_settings(settings_obj: Settings = settings):
    """Validate settings required to talk to Proxmox and the broker"""
    issues = []

    if not settings_obj.proxmox_host:
        issues.append("PROXMOX_HOST is not set, cluster API calls will fail")

    has_token = bool(settings_obj.proxmox_token_id and settings_obj.proxmox_token_secret)
    if not has_token and not settings_obj.proxmox_password:
        issues.append(
            "Neither PROXMOX_TOKEN_ID/PROXMOX_TOKEN_SECRET nor PROXMOX_PASSWORD is set"
        )

    if not parse_broker_url(settings_obj.mqtt_broker)["broker_url"]:
        issues.append("MQTT_BROKER is not a valid broker URL, MQTT publishing disabled")

    if settings_obj.backup_error_timeout < settings_obj.backup_absence_timeout:
        issues.append(
            "BACKUP_ERROR_TIMEOUT is shorter than BACKUP_ABSENCE_TIMEOUT; "
            "transient API errors will evict tasks early"
        )

    for issue in issues:
        logger.warning(issue)

    return issues
