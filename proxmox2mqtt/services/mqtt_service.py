"""
MQTT service for Proxmox2MQTT.

Publishes retained JSON state topics and receives command messages.

Command messages arrive on paho's network thread; they are handed to the
asyncio event loop so that all tracker and registry state is only touched
from the loop thread.
"""

import asyncio
import json
from typing import Any, Awaitable, Callable, Dict, List, Optional

import paho.mqtt.client as mqtt
import structlog

logger = structlog.get_logger()

CommandHandler = Callable[[str, str], Awaitable[None]]

COMMAND_TOPIC_SUFFIXES = [
    "nodes/+/command",
    "lxc/+/command",
]


class MQTTService:
    """Service for publishing MQTT state and dispatching MQTT commands."""

    def __init__(self):
        self.client = None
        self.connected = False
        self.config = {
            "enabled": False,
            "broker_url": None,
            "broker_port": 1883,
            "username": None,
            "password": None,
            "client_id": "proxmox2mqtt",
            "keepalive": 60,
            "tls_enabled": False,
            "base_topic": "proxmox2mqtt",
            "qos": 1,
        }
        self._command_handler: Optional[CommandHandler] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def configure(self, config: Dict[str, Any]):
        """Configure MQTT service with settings."""
        self.config.update(config)
        self.config["enabled"] = bool(config.get("enabled", False))
        self._validate_config()

        # Always tear down existing client before re-initializing.
        if self.client:
            self.disconnect()
            self.client = None

        if self.config["enabled"]:
            self._initialize_client()

    def _validate_config(self):
        """Validate MQTT configuration."""
        required_fields = ["broker_url", "base_topic"]
        for field in required_fields:
            if not self.config.get(field) and self.config["enabled"]:
                raise ValueError(f"Missing required MQTT config: {field}")

    def set_command_handler(
        self,
        handler: CommandHandler,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ):
        """Route inbound command messages to a coroutine on the given loop."""
        self._command_handler = handler
        self._loop = loop

    def _initialize_client(self):
        """Initialize MQTT client."""
        try:
            self.client = mqtt.Client(
                callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
                client_id=self.config["client_id"],
                protocol=mqtt.MQTTv311,
            )

            self.client.enable_logger()
            self.client.reconnect_delay_set(min_delay=1, max_delay=60)

            if self.config["username"] and self.config["password"]:
                self.client.username_pw_set(
                    self.config["username"],
                    self.config["password"],
                )

            if self.config["tls_enabled"]:
                self.client.tls_set()

            self.client.will_set(
                self.availability_topic,
                json.dumps({"status": "offline"}),
                qos=1,
                retain=True,
            )

            self.client.on_connect = self._on_connect
            self.client.on_disconnect = self._on_disconnect
            self.client.on_publish = self._on_publish
            self.client.on_message = self._on_message

            self._connect()

        except Exception as e:
            logger.error("Failed to initialize MQTT client", error=str(e))
            self.connected = False

    # ------------------------------------------------------------------
    # Connection Handling
    # ------------------------------------------------------------------

    def _connect(self):
        """Connect to MQTT broker."""
        if not self.client:
            return

        try:
            broker_url = self.config["broker_url"]
            broker_port = self.config["broker_port"]

            logger.info(
                "Connecting to MQTT broker",
                broker_url=broker_url,
                broker_port=broker_port,
            )

            self.client.connect(broker_url, broker_port, self.config["keepalive"])
            self.client.loop_start()

        except Exception as e:
            logger.error(
                "Failed to connect to MQTT broker",
                broker_url=self.config["broker_url"],
                error=str(e),
            )
            self.connected = False

    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        """Callback when client connects."""
        if reason_code == 0:
            logger.info("Connected to MQTT broker successfully")
            self.connected = True
            # Subscriptions are not persisted by the broker (clean session).
            for topic in self.command_topics:
                client.subscribe(topic, qos=self.config["qos"])
                logger.info("Subscribed to command topic", topic=topic)
            self.publish_availability()
        else:
            logger.error("MQTT connection failed", rc=str(reason_code))
            self.connected = False

    def _on_disconnect(self, client, userdata, flags, reason_code, properties=None):
        """Callback when client disconnects."""
        if reason_code != 0:
            logger.warning("Unexpected MQTT disconnection", rc=str(reason_code))
        else:
            logger.info("Disconnected from MQTT broker")
        self.connected = False

    def _on_publish(self, client, userdata, mid, reason_code=None, properties=None):
        """Callback when a message is published."""
        logger.debug("MQTT message published", message_id=mid)

    def _on_message(self, client, userdata, message):
        """Callback for inbound command messages (runs on the paho thread)."""
        try:
            payload = message.payload.decode("utf-8", errors="replace")
        except AttributeError:
            payload = str(message.payload)

        logger.debug("MQTT message received", topic=message.topic)

        if not self._command_handler or not self._loop:
            logger.warning("No command handler registered, dropping message", topic=message.topic)
            return

        asyncio.run_coroutine_threadsafe(
            self._command_handler(message.topic, payload),
            self._loop,
        )

    # ------------------------------------------------------------------
    # State Checks
    # ------------------------------------------------------------------

    def is_configured(self) -> bool:
        return bool(
            self.config["enabled"]
            and self.config["broker_url"]
        )

    def is_connected(self) -> bool:
        return self.connected

    @property
    def availability_topic(self) -> str:
        return f"{self.config['base_topic']}/status"

    @property
    def command_topics(self) -> List[str]:
        return [f"{self.config['base_topic']}/{suffix}" for suffix in COMMAND_TOPIC_SUFFIXES]

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    def publish(
        self,
        topic: str,
        payload: Dict[str, Any],
        qos: Optional[int] = None,
        use_base_topic: bool = True,
        retain: bool = True,
    ) -> bool:
        """Publish a JSON message to the MQTT broker."""
        if not self.is_configured():
            logger.debug("MQTT not configured, skipping publish")
            return False

        if not self.is_connected():
            logger.warning("MQTT not connected, skipping publish", topic=topic)
            return False

        try:
            base_topic = self.config["base_topic"]
            full_topic = (
                f"{base_topic}/{topic}" if use_base_topic and base_topic else topic
            )

            payload_json = json.dumps(payload)
            final_qos = qos if qos is not None else self.config["qos"]

            result = self.client.publish(
                full_topic,
                payload_json,
                qos=final_qos,
                retain=retain,
            )

            if result.rc == mqtt.MQTT_ERR_SUCCESS:
                logger.debug(
                    "MQTT message queued",
                    topic=full_topic,
                    qos=final_qos,
                )
                return True

            logger.error(
                "Failed to publish MQTT message",
                topic=full_topic,
                rc=result.rc,
                message=mqtt.error_string(result.rc),
            )
            return False
        except Exception as e:
            logger.error(
                "Exception publishing MQTT message",
                topic=topic,
                error=str(e),
            )
            return False

    def publish_availability(self, status: str = "online") -> bool:
        if not self.config["enabled"]:
            return False
        return self.publish("status", {"status": status}, qos=1)

    def publish_backup_status(self, container_key: str, payload: Dict[str, Any]) -> bool:
        """Publish the retained backup state of one container."""
        return self.publish(f"lxc/{container_key}/backup_status", payload)

    # ------------------------------------------------------------------
    # Disconnect
    # ------------------------------------------------------------------

    def disconnect(self):
        if self.client:
            try:
                if self.connected:
                    self.publish_availability("offline")
                self.client.loop_stop()
                self.client.disconnect()
            except Exception as e:
                logger.error("Error disconnecting from MQTT broker", error=str(e))
            finally:
                self.connected = False
                self.client = None


mqtt_service = MQTTService()
