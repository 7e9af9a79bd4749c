"""
OTA MQTT Listener

Subscribes to OTA status reports published by devices over MQTT and feeds
them through the same ingest pipeline as POST /api/ota-updates.

Supports topic pattern: {site_id}/ota/{device_id}/report

The topic's device id is used when the payload does not carry one.
Configuration comes from the same environment variables as the HTTP
service (see ota_config).
"""

import json
import logging
from typing import Any, Dict, Optional

import paho.mqtt.client as mqtt
from paho.mqtt.client import CallbackAPIVersion
import psycopg

from ota_config import Settings, configure_logging
from ota_errors import OTAError
from ota_pipeline import IngestOptions, ingest_report, parse_report
from ota_store import Actor, OTAStore

logger = logging.getLogger("ota-mqtt-listener")


# ---------------------------------------------------------------------
# Database handling
# ---------------------------------------------------------------------
def connect_to_database(settings: Settings) -> psycopg.Connection:
    logger.info(
        "Connecting to Postgres at %s:%s db=%s",
        settings.pghost,
        settings.pgport,
        settings.pgdatabase,
    )
    return psycopg.connect(
        host=settings.pghost,
        port=settings.pgport,
        user=settings.pguser,
        password=settings.pgpassword,
        dbname=settings.pgdatabase,
        autocommit=True,
    )


# ---------------------------------------------------------------------
# Topic / payload handling
# ---------------------------------------------------------------------
def parse_topic(topic: str) -> Optional[tuple[str, str]]:
    """
    Parse topic structure: {site_id}/ota/{device_id}/report

    Returns: (site_id, device_id) or None if the topic is not an OTA report
    """
    parts = topic.split("/")
    if len(parts) != 4:
        logger.warning("Invalid topic structure (expected 4 levels): %s", topic)
        return None

    site_id, system, device_id, topic_type = parts
    if system != "ota" or topic_type != "report" or not device_id:
        logger.debug("Ignoring non OTA report topic: %s", topic)
        return None

    return (site_id, device_id)


def decode_payload(payload_raw: str, topic_device_id: str) -> Optional[Dict[str, Any]]:
    try:
        data = json.loads(payload_raw)
    except json.JSONDecodeError:
        logger.warning("Failed to decode JSON payload for %s: %s", topic_device_id, payload_raw)
        return None

    if not isinstance(data, dict):
        logger.warning("Expected JSON object for %s, got: %r", topic_device_id, data)
        return None

    if not data.get("device_id") and not data.get("deviceId"):
        data["device_id"] = topic_device_id
    return data


# ---------------------------------------------------------------------
# MQTT callbacks
# ---------------------------------------------------------------------
class OTAListenerApp:
    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.store: Optional[OTAStore] = None
        self.options = IngestOptions(
            tz=settings.tz,
            strict_status_codes=settings.strict_status_codes,
            retry_attempts=settings.storage_retry_attempts,
            retry_base_delay=settings.storage_retry_base_delay,
        )
        self.client = mqtt.Client(callback_api_version=CallbackAPIVersion.VERSION2)

        self.client.on_connect = self.on_connect
        self.client.on_message = self.on_message
        self.client.on_disconnect = self.on_disconnect

    def start(self) -> None:
        self.store = OTAStore(connect_to_database(self.settings))

        logger.info(
            "Connecting to MQTT at %s:%s, subscribing to: %s",
            self.settings.mqtt_host,
            self.settings.mqtt_port,
            self.settings.mqtt_topic_pattern,
        )
        self.client.connect(self.settings.mqtt_host, self.settings.mqtt_port, keepalive=60)
        self.client.loop_forever()

    # MQTT callbacks ---------------------------------------------------
    def on_connect(self, client, userdata, flags, reason_code, properties):
        if reason_code.is_failure:
            logger.error("Failed to connect to MQTT broker: %s", reason_code)
        else:
            logger.info("Connected to MQTT broker")
            client.subscribe(self.settings.mqtt_topic_pattern)
            logger.info("Subscribed to: %s", self.settings.mqtt_topic_pattern)

    def on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties):
        logger.warning("Disconnected from MQTT broker, reason_code=%s", reason_code)

    def on_message(self, client, userdata, msg):
        topic = msg.topic
        payload_raw = msg.payload.decode("utf-8", errors="replace")
        logger.debug("Received MQTT message on %s: %s", topic, payload_raw)

        parsed = parse_topic(topic)
        if not parsed:
            return
        site_id, device_id = parsed

        data = decode_payload(payload_raw, device_id)
        if data is None:
            return

        if self.store is None:
            logger.error("No DB connection available; dropping message from %s", topic)
            return

        try:
            report = parse_report(data)
            result = ingest_report(self.store, report, self.options, actor=Actor.system())
            logger.info(
                "Ingested OTA report: %s/%s pic=%s effective=%s",
                site_id,
                report.device_id,
                report.pic_id,
                result["effective_badge"],
            )
        except OTAError as exc:
            logger.warning("Rejected OTA report from %s: %s", topic, exc)
        except Exception as exc:
            logger.exception("Failed to process message from %s: %s", topic, exc)


# ---------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------
def main() -> None:
    settings = Settings()
    configure_logging(settings.log_level)
    app = OTAListenerApp(settings)
    app.start()


if __name__ == "__main__":
    main()
