#!/usr/bin/env python3
"""meshdecoder MQTT bridge.

High-level flow:
1. Parse CLI/TOML/environment settings.
2. Connect to MQTT and subscribe to ``<root>/2/e/#``.
3. Decode each ServiceEnvelope with :mod:`meshdecoder`.
4. Publish the JSON document to the matching ``<root>/2/decoder/...`` topic.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import signal
import socket
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

import paho.mqtt.client as mqtt

from meshdecoder import decode_message

logger = logging.getLogger(__name__)

DEFAULT_MQTT_HOST = "raspberrypi:1883"
DEFAULT_ROOT_TOPIC = "msh/PL"
DEFAULT_LOG_LEVEL = "warn"

# Level names accepted in LOG_LEVEL / [logging].level, including the
# pino-style names used by existing deployments.
LOG_LEVELS: dict[str, int] = {
    "trace": logging.DEBUG,
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "fatal": logging.CRITICAL,
    "critical": logging.CRITICAL,
    "silent": logging.CRITICAL + 10,
}


@dataclass
class Settings:
    broker: str
    port: int
    root_topic: str
    username: str | None
    password: str | None
    client_id: str
    keepalive: int
    tls: bool
    insecure_tls: bool
    qos: int
    log_level: str
    preserve_field_names: bool
    verbose_mqtt: bool

    @property
    def subscribe_topic(self) -> str:
        return f"{self.root_topic}/2/e/#"


def publish_topic(source_topic: str, root_topic: str) -> str:
    """Map an encrypted-feed topic onto the decoder feed."""
    return source_topic.replace(f"{root_topic}/2/e", f"{root_topic}/2/decoder", 1)


def _strip_quotes(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        return value[1:-1]
    return value


def _split_host_port(value: str) -> tuple[str, int | None]:
    """Split ``host[:port]`` as used by MQTT_HOST."""
    host, sep, port = _strip_quotes(value.strip()).rpartition(":")
    if not sep or not port.isdigit():
        return value.strip(), None
    return host, int(port)


def _get_cfg_section(config: dict[str, Any], section: str) -> dict[str, Any]:
    value = config.get(section)
    return value if isinstance(value, dict) else {}


def _cfg_value(
    config: dict[str, Any],
    key: str,
    *,
    section: str | None = None,
    aliases: tuple[str, ...] = (),
    env: str | None = None,
    environ: Mapping[str, str] | None = None,
) -> Any:
    if section:
        section_data = _get_cfg_section(config, section)
        for name in (key, *aliases):
            if name in section_data:
                return section_data[name]
    for name in (key, *aliases):
        if name in config:
            return config[name]
    if env:
        environ = os.environ if environ is None else environ
        value = environ.get(env)
        if value:
            return _strip_quotes(value.strip())
    return None


def load_config(config_path: Path | None) -> dict[str, Any]:
    """Load optional TOML config file."""
    if config_path is None:
        return {}
    with config_path.open("rb") as fh:
        loaded = tomllib.load(fh)
    if not isinstance(loaded, dict):
        raise argparse.ArgumentTypeError("Config file must contain a TOML table at top level")
    return loaded


def parse_args(
    argv: list[str] | None = None,
    environ: Mapping[str, str] | None = None,
) -> Settings:
    """Merge CLI args, TOML values and environment into a Settings object.

    Precedence is CLI, then TOML, then MQTT_HOST / ROOT_TOPIC / LOG_LEVEL,
    then built-in defaults.
    """
    environ = os.environ if environ is None else environ
    pre = argparse.ArgumentParser(add_help=False)
    pre.add_argument("--config", default=None, help="TOML config path")
    pre_args, _ = pre.parse_known_args(argv)
    config_path = Path(pre_args.config) if pre_args.config else None
    try:
        config = load_config(config_path)
    except (OSError, tomllib.TOMLDecodeError, argparse.ArgumentTypeError) as exc:
        raise SystemExit(f"Failed to load config: {exc}") from exc

    env_host, env_port = _split_host_port(environ.get("MQTT_HOST") or DEFAULT_MQTT_HOST)

    parser = argparse.ArgumentParser(
        description="meshdecoder: decode Meshtastic MQTT envelopes and republish them as JSON."
    )
    parser.add_argument("--config", default=pre_args.config, help="TOML config path")
    parser.add_argument(
        "--broker",
        default=_cfg_value(config, "broker", section="mqtt", aliases=("host",)) or env_host,
        help="MQTT broker host (env: MQTT_HOST)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=_cfg_value(config, "port", section="mqtt") or env_port or 1883,
        help="MQTT broker port",
    )
    parser.add_argument(
        "--root-topic",
        default=_cfg_value(
            config,
            "root_topic",
            section="mqtt",
            aliases=("root-topic",),
            env="ROOT_TOPIC",
            environ=environ,
        )
        or DEFAULT_ROOT_TOPIC,
        help=f"Meshtastic root topic (env: ROOT_TOPIC, default: {DEFAULT_ROOT_TOPIC})",
    )
    parser.add_argument(
        "--username",
        default=_cfg_value(config, "username", section="mqtt"),
        help="MQTT username",
    )
    parser.add_argument(
        "--password",
        default=_cfg_value(config, "password", section="mqtt"),
        help="MQTT password",
    )
    parser.add_argument(
        "--client-id",
        default=_cfg_value(config, "client_id", section="mqtt", aliases=("client-id",))
        or "meshdecoder",
        help="MQTT client ID",
    )
    parser.add_argument(
        "--keepalive",
        type=int,
        default=_cfg_value(config, "keepalive", section="mqtt") or 60,
        help="MQTT keepalive seconds",
    )
    parser.add_argument(
        "--tls",
        action=argparse.BooleanOptionalAction,
        default=bool(_cfg_value(config, "tls", section="mqtt") or False),
        help="Use TLS",
    )
    parser.add_argument(
        "--insecure-tls",
        action=argparse.BooleanOptionalAction,
        default=bool(_cfg_value(config, "insecure_tls", section="mqtt", aliases=("insecure-tls",)) or False),
        help="Disable TLS cert verification (not recommended)",
    )
    parser.add_argument(
        "--qos",
        type=int,
        default=_cfg_value(config, "qos", section="mqtt") or 0,
        help="QoS for subscribe and publish (default: 0)",
    )
    parser.add_argument(
        "--log-level",
        default=_cfg_value(
            config,
            "level",
            section="logging",
            aliases=("log_level", "log-level"),
            env="LOG_LEVEL",
            environ=environ,
        )
        or DEFAULT_LOG_LEVEL,
        help=f"Log level (env: LOG_LEVEL, default: {DEFAULT_LOG_LEVEL})",
    )
    parser.add_argument(
        "--preserve-field-names",
        action=argparse.BooleanOptionalAction,
        default=bool(
            _cfg_value(
                config,
                "preserve_field_names",
                section="output",
                aliases=("preserve-field-names",),
            )
            or False
        ),
        help="Emit proto field names (channel_id) instead of JSON names (channelId)",
    )
    parser.add_argument(
        "--verbose-mqtt",
        action=argparse.BooleanOptionalAction,
        default=bool(_cfg_value(config, "verbose_mqtt", section="mqtt", aliases=("verbose-mqtt",)) or False),
        help="Forward paho client logs at debug level",
    )

    args = parser.parse_args(argv)
    if not args.broker:
        parser.error("MQTT broker is required. Set --broker, MQTT_HOST or provide it in --config.")
    if args.qos not in (0, 1, 2):
        parser.error("--qos must be 0, 1 or 2")
    log_level = str(args.log_level).strip().lower()
    if log_level not in LOG_LEVELS:
        parser.error(f"--log-level must be one of: {', '.join(LOG_LEVELS)}")
    root_topic = str(args.root_topic).strip().rstrip("/")
    if not root_topic:
        parser.error("--root-topic must not be empty")

    return Settings(
        broker=args.broker,
        port=args.port,
        root_topic=root_topic,
        username=args.username,
        password=args.password,
        client_id=args.client_id,
        keepalive=args.keepalive,
        tls=args.tls,
        insecure_tls=args.insecure_tls,
        qos=args.qos,
        log_level=log_level,
        preserve_field_names=args.preserve_field_names,
        verbose_mqtt=args.verbose_mqtt,
    )


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=LOG_LEVELS[level],
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def on_connect(client: mqtt.Client, _userdata: Any, _flags: Any, rc: Any, _props: Any = None) -> None:
    """MQTT connect callback: subscribe to the encrypted feed on success."""
    settings: Settings = client._meshdecoder_settings  # type: ignore[attr-defined]
    if rc == 0:
        logger.info("Connected to %s:%s (client_id=%s)", settings.broker, settings.port, settings.client_id)
        result, mid = client.subscribe(settings.subscribe_topic, qos=settings.qos)
        if result == mqtt.MQTT_ERR_SUCCESS:
            logger.info("Subscribe requested: topic='%s' mid=%s", settings.subscribe_topic, mid)
        else:
            logger.error("Error while subscribing to %s: rc=%s", settings.subscribe_topic, result)
    else:
        logger.error("Connection failed, rc=%s", rc)


def on_subscribe(
    client: mqtt.Client,
    _userdata: Any,
    mid: int,
    reason_codes: Any,
    _properties: Any = None,
) -> None:
    """MQTT subscribe callback: confirms broker accepted subscription."""
    settings: Settings = client._meshdecoder_settings  # type: ignore[attr-defined]
    logger.info("Subscription acknowledged: topic='%s' mid=%s codes=%s", settings.subscribe_topic, mid, reason_codes)


def on_disconnect(
    client: mqtt.Client,
    _userdata: Any,
    _flags: Any,
    rc: Any,
    _properties: Any = None,
) -> None:
    """MQTT disconnect callback: paho reconnects on its own inside loop_forever."""
    if rc == 0:
        logger.info("Disconnected from MQTT broker")
    else:
        logger.warning("Unexpected MQTT disconnect rc=%s", rc)


def on_log(client: mqtt.Client, _userdata: Any, level: int, buf: str) -> None:
    """Optional low-level MQTT protocol logs (enabled by --verbose-mqtt)."""
    settings: Settings = client._meshdecoder_settings  # type: ignore[attr-defined]
    if settings.verbose_mqtt:
        logger.debug("[mqtt:%s] %s", level, buf)


def on_message(client: mqtt.Client, _userdata: Any, msg: mqtt.MQTTMessage) -> None:
    """MQTT message callback: decode the envelope and republish it as JSON."""
    settings: Settings = client._meshdecoder_settings  # type: ignore[attr-defined]
    client._meshdecoder_rx_count += 1  # type: ignore[attr-defined]

    try:
        document = decode_message(
            bytes(msg.payload),
            preserve_field_names=settings.preserve_field_names,
        )
        if document is None:
            client._meshdecoder_drop_count += 1  # type: ignore[attr-defined]
            logger.debug(
                "Dropped message topic='%s' bytes=%s total_rx=%s dropped=%s",
                msg.topic,
                len(msg.payload),
                client._meshdecoder_rx_count,  # type: ignore[attr-defined]
                client._meshdecoder_drop_count,  # type: ignore[attr-defined]
            )
            return

        target = publish_topic(msg.topic, settings.root_topic)
        body = json.dumps(document, separators=(",", ":"), ensure_ascii=False)
        info = client.publish(target, body, qos=settings.qos)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            logger.error("Could not publish message to '%s': rc=%s", target, info.rc)
            return
        client._meshdecoder_publish_count += 1  # type: ignore[attr-defined]
        logger.debug("Published decoded message topic='%s'", target)
    except Exception as exc:
        logger.error("Could not publish message for topic '%s': %s", msg.topic, exc)


def build_client(settings: Settings) -> mqtt.Client:
    """Create a paho client wired with the bridge callbacks and counters."""
    client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=settings.client_id)
    client._meshdecoder_settings = settings  # type: ignore[attr-defined]
    client._meshdecoder_rx_count = 0  # type: ignore[attr-defined]
    client._meshdecoder_drop_count = 0  # type: ignore[attr-defined]
    client._meshdecoder_publish_count = 0  # type: ignore[attr-defined]
    client.on_connect = on_connect
    client.on_subscribe = on_subscribe
    client.on_disconnect = on_disconnect
    client.on_log = on_log
    client.on_message = on_message
    client.reconnect_delay_set(min_delay=1, max_delay=5)

    if settings.username is not None or settings.password is not None:
        client.username_pw_set(settings.username or "", settings.password)
    if settings.tls:
        client.tls_set()
        if settings.insecure_tls:
            client.tls_insecure_set(True)
    return client


def main(argv: list[str] | None = None) -> int:
    """Program entrypoint."""
    settings = parse_args(argv)
    configure_logging(settings.log_level)
    client = build_client(settings)

    def shutdown(_sig: int, _frame: Any) -> None:
        logger.info("Exiting...")
        try:
            client.disconnect()
        finally:
            raise SystemExit(0)

    signal.signal(signal.SIGINT, shutdown)
    signal.signal(signal.SIGTERM, shutdown)

    try:
        client.connect(settings.broker, settings.port, settings.keepalive)
        client.loop_forever()
        return 0
    except socket.gaierror as exc:
        logger.error(
            "DNS lookup failed for broker '%s'. Set [mqtt].broker or MQTT_HOST to a real hostname or IP address: %s",
            settings.broker,
            exc,
        )
        return 2
    except OSError as exc:
        logger.error("Failed to connect to broker %s:%s: %s", settings.broker, settings.port, exc)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
