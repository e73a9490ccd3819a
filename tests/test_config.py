from __future__ import annotations

import json

from aiomqttlive import MqttClient
from config import Config


def test_missing_file_writes_defaults(tmp_path):
    path = tmp_path / "config.json"
    config = Config(str(path))

    config.load()

    assert path.exists()
    data = json.loads(path.read_text())
    assert data["mqtt"]["port"] == 1883
    assert data["mqtt"]["keepalive"] == 60
    assert data["mqtt"]["reconnect_period_ms"] == 5000
    assert config.mqtt_broker == ""


def test_invalid_json_is_replaced_with_defaults(tmp_path):
    path = tmp_path / "config.json"
    path.write_text("{not json")

    Config(str(path)).load()

    assert json.loads(path.read_text())["mqtt"]["max_connection_attempts"] == 3


def test_load_reads_mqtt_section(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(
        json.dumps(
            {
                "mqtt": {
                    "broker": "wss://broker.local/mqtt",
                    "port": 8081,
                    "username": "alice",
                    "password": "secret",
                    "keepalive": 15,
                    "disconnect_on_no_response": 5,
                    "websocket_alt": True,
                    "auto_reconnect": True,
                }
            }
        )
    )
    config = Config(str(path))

    config.load()
    kwargs = config.client_kwargs()

    assert kwargs["server"] == "wss://broker.local/mqtt"
    assert kwargs["port"] == 8081
    assert kwargs["client_id"] is None
    assert kwargs["user"] == "alice"
    assert kwargs["keepalive"] == 15
    assert kwargs["disconnect_on_no_response_period"] == 5
    assert kwargs["use_websocket"] is True
    assert kwargs["use_alternate_websocket_implementation"] is True
    assert kwargs["auto_reconnect"] is True


def test_client_kwargs_build_a_client(tmp_path):
    config = Config(str(tmp_path / "config.json"))
    config.mqtt_broker = "broker.local"
    config.mqtt_client_id = "sensor-1"

    client = MqttClient(**config.client_kwargs())

    assert client.client_id == "sensor-1"
    assert client.server == "broker.local"
    assert client.connection_handler.max_connection_attempts == 3
    assert client.connection_handler.connect_timer.timeout_ms == 5000


def test_save_round_trips(tmp_path):
    path = tmp_path / "config.json"
    config = Config(str(path))
    config.mqtt_broker = "broker.local"
    config.mqtt_tls = True
    config.save()

    reloaded = Config(str(path))
    reloaded.load()

    assert reloaded.mqtt_broker == "broker.local"
    assert reloaded.mqtt_tls is True
