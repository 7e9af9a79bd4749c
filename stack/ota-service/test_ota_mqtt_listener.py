#!/usr/bin/env python3
"""
Unit tests for the OTA MQTT listener

Tests topic parsing, payload decoding and the ingest hand-off.
"""

import json
from datetime import date
from unittest.mock import Mock, patch

import pytest

from ota_config import Settings
from ota_mqtt_listener import OTAListenerApp, decode_payload, parse_topic


def make_message(topic, payload):
    msg = Mock()
    msg.topic = topic
    msg.payload = payload if isinstance(payload, bytes) else json.dumps(payload).encode("utf-8")
    return msg


@pytest.fixture
def listener(store):
    with patch('ota_mqtt_listener.mqtt.Client'):
        app = OTAListenerApp(Settings(storage_retry_base_delay=0))
    app.store = store
    return app


# ---------------------------------------------------------------------
# Topic Parsing Tests
# ---------------------------------------------------------------------

def test_parse_topic_valid():
    assert parse_topic("van/ota/dev-1/report") == ("van", "dev-1")


def test_parse_topic_wrong_system_or_type():
    assert parse_topic("van/ruuvi/dev-1/report") is None
    assert parse_topic("van/ota/dev-1/status") is None


def test_parse_topic_invalid_levels():
    assert parse_topic("van/ota/dev-1") is None
    assert parse_topic("van/ota/dev-1/report/extra") is None
    assert parse_topic("") is None


# ---------------------------------------------------------------------
# Payload Decoding Tests
# ---------------------------------------------------------------------

def test_decode_payload_fills_device_from_topic():
    data = decode_payload('{"pic_id": "U1"}', "dev-1")
    assert data["device_id"] == "dev-1"


def test_decode_payload_keeps_payload_device():
    assert decode_payload('{"deviceId": "dev-9"}', "dev-1") == {"deviceId": "dev-9"}


def test_decode_payload_rejects_bad_json():
    assert decode_payload("not json", "dev-1") is None
    assert decode_payload("[1, 2]", "dev-1") is None


# ---------------------------------------------------------------------
# MQTT callbacks
# ---------------------------------------------------------------------

def test_on_connect_subscribes(listener):
    reason_code = Mock()
    reason_code.is_failure = False

    listener.on_connect(listener.client, None, None, reason_code, None)
    listener.client.subscribe.assert_called_once_with("+/ota/+/report")


def test_on_connect_failure(listener):
    reason_code = Mock()
    reason_code.is_failure = True

    listener.on_connect(listener.client, None, None, reason_code, None)
    listener.client.subscribe.assert_not_called()


def test_on_message_ingests_report(listener, store):
    msg = make_message("van/ota/dev-1/report", {
        "pic_id": "U1",
        "status": 2,
        "previous_version": "1.0",
        "updated_version": "2.0",
        "timestamp": "2025-03-01T10:00:00Z",
    })
    listener.on_message(listener.client, None, msg)

    assert store.units[("U1", "2.0")].final_status == "success"
    assert store.get_daily_stats("dev-1", date(2025, 3, 1)).counts().success == 1


def test_on_message_drops_invalid_report(listener, store):
    msg = make_message("van/ota/dev-1/report", {"pic_id": "U1"})
    listener.on_message(listener.client, None, msg)
    assert store.units == {}


def test_on_message_drops_unknown_device(listener, store):
    msg = make_message("van/ota/ghost/report", {
        "pic_id": "U1",
        "status": 2,
        "previous_version": "1.0",
        "updated_version": "2.0",
    })
    listener.on_message(listener.client, None, msg)
    assert store.units == {}


def test_on_message_without_store(listener):
    listener.store = None
    with patch('ota_mqtt_listener.ingest_report') as mock_ingest:
        listener.on_message(listener.client, None, make_message("van/ota/dev-1/report", {"pic_id": "U1"}))
    mock_ingest.assert_not_called()
