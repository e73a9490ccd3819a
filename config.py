import json

from aiomqttlive import log


class Config:
    def __init__(self, path: str = "config.json"):
        self.path = path
        self.mqtt_broker = ""
        self.mqtt_port = 1883
        self.mqtt_client_id = ""
        self.mqtt_username = ""
        self.mqtt_password = ""
        self.mqtt_keepalive = 60
        self.mqtt_disconnect_on_no_response = 0
        self.mqtt_max_connection_attempts = 3
        self.mqtt_reconnect_period_ms = 5000
        self.mqtt_tls = False
        self.mqtt_websocket = False
        self.mqtt_websocket_alt = False
        self.mqtt_websocket_path = "/mqtt"
        self.mqtt_websocket_protocols = None
        self.mqtt_websocket_headers = None
        self.mqtt_auto_reconnect = False

    def load(self):
        try:
            with open(self.path, "r") as config_file:
                config = json.load(config_file)
        except (OSError, ValueError) as e:
            log(f"Error reading config file: {e}")
            self.save()
            return
        mqtt = config.get("mqtt", {})
        self.mqtt_broker = mqtt.get("broker", "")
        self.mqtt_port = mqtt.get("port", 1883)
        self.mqtt_client_id = mqtt.get("client_id", "")
        self.mqtt_username = mqtt.get("username", "")
        self.mqtt_password = mqtt.get("password", "")
        self.mqtt_keepalive = mqtt.get("keepalive", 60)
        self.mqtt_disconnect_on_no_response = mqtt.get("disconnect_on_no_response", 0)
        self.mqtt_max_connection_attempts = mqtt.get("max_connection_attempts", 3)
        self.mqtt_reconnect_period_ms = mqtt.get("reconnect_period_ms", 5000)
        self.mqtt_tls = mqtt.get("tls", False)
        self.mqtt_websocket = mqtt.get("websocket", False)
        self.mqtt_websocket_alt = mqtt.get("websocket_alt", False)
        self.mqtt_websocket_path = mqtt.get("websocket_path", "/mqtt")
        self.mqtt_websocket_protocols = mqtt.get("websocket_protocols")
        self.mqtt_websocket_headers = mqtt.get("websocket_headers")
        self.mqtt_auto_reconnect = mqtt.get("auto_reconnect", False)
        log("Config loaded successfully.")

    def save(self):
        config = {
            "mqtt": {
                "broker": self.mqtt_broker,
                "port": self.mqtt_port,
                "client_id": self.mqtt_client_id,
                "username": self.mqtt_username,
                "password": self.mqtt_password,
                "keepalive": self.mqtt_keepalive,
                "disconnect_on_no_response": self.mqtt_disconnect_on_no_response,
                "max_connection_attempts": self.mqtt_max_connection_attempts,
                "reconnect_period_ms": self.mqtt_reconnect_period_ms,
                "tls": self.mqtt_tls,
                "websocket": self.mqtt_websocket,
                "websocket_alt": self.mqtt_websocket_alt,
                "websocket_path": self.mqtt_websocket_path,
                "websocket_protocols": self.mqtt_websocket_protocols,
                "websocket_headers": self.mqtt_websocket_headers,
                "auto_reconnect": self.mqtt_auto_reconnect,
            }
        }
        with open(self.path, "w") as config_file:
            json.dump(config, config_file, indent=4)
        log("Config file created with default values.")
        return config

    def client_kwargs(self) -> dict:
        """Keyword arguments for MqttClient built from the loaded settings."""
        return {
            "server": self.mqtt_broker,
            "port": self.mqtt_port,
            "client_id": self.mqtt_client_id or None,
            "user": self.mqtt_username or None,
            "password": self.mqtt_password or None,
            "keepalive": self.mqtt_keepalive,
            "disconnect_on_no_response_period": self.mqtt_disconnect_on_no_response,
            "max_connection_attempts": self.mqtt_max_connection_attempts,
            "reconnect_time_period": self.mqtt_reconnect_period_ms,
            "secure": self.mqtt_tls,
            "use_websocket": self.mqtt_websocket or self.mqtt_websocket_alt,
            "use_alternate_websocket_implementation": self.mqtt_websocket_alt,
            "websocket_path": self.mqtt_websocket_path,
            "websocket_protocols": self.mqtt_websocket_protocols,
            "websocket_headers": self.mqtt_websocket_headers,
            "auto_reconnect": self.mqtt_auto_reconnect,
        }
