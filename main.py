"""
Example usage of the MQTT connection core.

This example connects to the broker named in config.json, keeps the
connection alive and prints connection and ping statistics periodically.
It runs continuously and handles graceful shutdown on Ctrl+C.
"""

import asyncio
import signal
from time import time

from aiomqttlive import (
    ConnectionState,
    MqttClient,
    MqttStats,
    NoConnectionError,
    log,
)
from config import Config

# Flag to indicate shutdown
shutdown_requested = False
mqtt_stats: MqttStats = MqttStats()

boot_time = time()


def get_uptime():
    uptime = int(time() - boot_time)
    minutes = uptime // 60
    hours = minutes // 60
    days = hours // 24
    str_uptime = f"{int(days)}d {int(hours % 24)}h {int(minutes % 60)}m {int(uptime % 60)}s"
    return {
        "uptime": str_uptime,
        "uptime_sec": uptime,
    }


def on_connected():
    log("Connected to broker")


def on_disconnected():
    log("Disconnected")


def on_auto_reconnect():
    log("Connection lost, auto reconnecting...")


def on_failed_connection_attempt(attempt: int):
    log(f"Connection attempt {attempt} failed")


def on_pong(latency_ms: int):
    # log(f"PING response received from broker in {latency_ms} ms")
    pass


def signal_handler():
    global shutdown_requested
    log("Shutdown requested, closing MQTT client...")
    shutdown_requested = True


def register_signal_handlers():
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, signal_handler)
        except NotImplementedError:
            # For systems where add_signal_handler is not implemented (e.g., Windows)
            log("Warning: Signal handlers not fully supported on this platform.")


def build_client(config: Config, stats: MqttStats) -> MqttClient:
    client = MqttClient(**config.client_kwargs(), stats=stats)
    client.on_connected = on_connected
    client.on_disconnected = on_disconnected
    client.on_auto_reconnect = on_auto_reconnect
    client.on_failed_connection_attempt = on_failed_connection_attempt
    client.pong_callback = on_pong
    return client


def print_stats_table(stats: dict, client: MqttClient):
    """Print connection stats in a clean ASCII table format."""

    rows = [
        ["Connections", "Started", stats["connections_sent"]],
        ["", "Failed", stats["connections_failed"]],
        ["", "Auto reconnects", stats["auto_reconnect_count"]],
        ["Ping", "Sent", stats["ping_sent_count"]],
        ["", "Received", stats["ping_received_count"]],
        ["", "RTT (ms)", stats["ping_rtt_ms"]],
        ["Latency", "Last (ms)", client.last_cycle_latency],
        ["", "Average (ms)", client.average_cycle_latency],
        ["Uptime", "", get_uptime()["uptime"]],
    ]

    col_widths = [max(len(row[i]) for row in rows) if i < 2 else 14 for i in range(3)]

    def border():
        return "+-" + "-+-".join("-" * w for w in col_widths) + "-+"

    def format_row(row):
        return "| " + " | ".join(f"{str(cell):{w}}" for cell, w in zip(row, col_widths)) + " |"

    log(f"MQTT Connection Stats ({client.connection_status})")
    print(border())
    print(format_row(["Category", "Metric", "Value"]))
    print(border())
    for row in rows:
        print(format_row(row))
    print(border())


async def main():
    log("Starting MQTT connection example")
    register_signal_handlers()
    config = Config()
    config.load()
    if not config.mqtt_broker:
        log("No broker configured, edit config.json and run again.")
        return

    client = build_client(config, mqtt_stats)
    log("Running... (Press Ctrl+C to exit)")
    stats_freq_sec = 10
    retry_delay = 5
    while not shutdown_requested:
        try:
            status = await client.connect()
        except NoConnectionError as e:
            log(f"[MAIN] {e}")
            await asyncio.sleep(retry_delay)
            continue
        if status.state != ConnectionState.CONNECTED:
            await asyncio.sleep(retry_delay)
            continue

        last_stats_ts = time()
        while not shutdown_requested:
            await asyncio.sleep(1)
            state = client.connection_status.state
            if state == ConnectionState.DISCONNECTED and not client.auto_reconnect:
                break
            if time() - last_stats_ts >= stats_freq_sec:
                print_stats_table(client.stats.get_stats(), client)
                last_stats_ts = time()

    await client.disconnect()
    print_stats_table(client.stats.get_stats(), client)


if __name__ == "__main__":
    asyncio.run(main())
