from __future__ import annotations

import json
import logging
from types import SimpleNamespace
from unittest.mock import MagicMock

import paho.mqtt.client as mqtt
import pytest
from meshtastic.protobuf.portnums_pb2 import PortNum

import meshdecoder_mqtt
from meshdecoder_mqtt import (
    build_client,
    on_connect,
    on_message,
    parse_args,
    publish_topic,
)
from conftest import envelope_bytes

SOURCE_TOPIC = "msh/PL/2/e/LongFast/!11223344"


def make_client(settings, publish_rc=mqtt.MQTT_ERR_SUCCESS):
    client = MagicMock()
    client._meshdecoder_settings = settings
    client._meshdecoder_rx_count = 0
    client._meshdecoder_drop_count = 0
    client._meshdecoder_publish_count = 0
    client.publish.return_value = SimpleNamespace(rc=publish_rc)
    return client


def make_msg(payload: bytes, topic: str = SOURCE_TOPIC):
    return SimpleNamespace(topic=topic, payload=payload)


class TestPublishTopic:
    def test_rewrites_prefix(self):
        assert publish_topic(SOURCE_TOPIC, "msh/PL") == "msh/PL/2/decoder/LongFast/!11223344"

    def test_other_root_untouched(self):
        assert publish_topic("msh/US/2/e/LongFast", "msh/PL") == "msh/US/2/e/LongFast"


class TestParseArgs:
    def test_defaults(self):
        settings = parse_args([], environ={})
        assert settings.broker == "raspberrypi"
        assert settings.port == 1883
        assert settings.root_topic == "msh/PL"
        assert settings.log_level == "warn"
        assert settings.subscribe_topic == "msh/PL/2/e/#"
        assert settings.preserve_field_names is False

    def test_environment(self):
        environ = {"MQTT_HOST": "broker.local:1884", "ROOT_TOPIC": "msh/US/", "LOG_LEVEL": "DEBUG"}
        settings = parse_args([], environ=environ)
        assert settings.broker == "broker.local"
        assert settings.port == 1884
        assert settings.root_topic == "msh/US"
        assert settings.log_level == "debug"

    def test_host_without_port(self):
        settings = parse_args([], environ={"MQTT_HOST": "mqtt.example.org"})
        assert settings.broker == "mqtt.example.org"
        assert settings.port == 1883

    def test_toml_overrides_environment(self, tmp_path):
        config = tmp_path / "meshdecoder.toml"
        config.write_text(
            '[mqtt]\nbroker = "toml-broker"\nroot_topic = "msh/EU_868"\nqos = 1\n'
            '[logging]\nlevel = "info"\n'
            "[output]\npreserve_field_names = true\n"
        )
        environ = {"MQTT_HOST": "env-broker:1999", "ROOT_TOPIC": "msh/US", "LOG_LEVEL": "error"}
        settings = parse_args(["--config", str(config)], environ=environ)
        assert settings.broker == "toml-broker"
        assert settings.port == 1999
        assert settings.root_topic == "msh/EU_868"
        assert settings.qos == 1
        assert settings.log_level == "info"
        assert settings.preserve_field_names is True

    def test_cli_overrides_toml(self, tmp_path):
        config = tmp_path / "meshdecoder.toml"
        config.write_text('[mqtt]\nbroker = "toml-broker"\nport = 8883\n')
        settings = parse_args(
            ["--config", str(config), "--broker", "cli-broker", "--port", "1885", "--tls"],
            environ={},
        )
        assert settings.broker == "cli-broker"
        assert settings.port == 1885
        assert settings.tls is True

    def test_invalid_log_level(self):
        with pytest.raises(SystemExit):
            parse_args(["--log-level", "loud"], environ={})

    def test_invalid_qos(self):
        with pytest.raises(SystemExit):
            parse_args(["--qos", "3"], environ={})

    def test_missing_config_file(self, tmp_path):
        with pytest.raises(SystemExit):
            parse_args(["--config", str(tmp_path / "missing.toml")], environ={})


class TestOnMessage:
    def test_publishes_decoded_text(self, settings):
        client = make_client(settings)
        on_message(client, None, make_msg(envelope_bytes(portnum=PortNum.TEXT_MESSAGE_APP, payload=b"hello")))

        client.publish.assert_called_once()
        args, kwargs = client.publish.call_args
        assert args[0] == "msh/PL/2/decoder/LongFast/!11223344"
        assert kwargs["qos"] == 0
        body = json.loads(args[1])
        assert body["packet"]["decoded"]["payload"] == "hello"
        assert client._meshdecoder_rx_count == 1
        assert client._meshdecoder_publish_count == 1

    def test_malformed_envelope_not_published(self, settings, caplog):
        client = make_client(settings)
        with caplog.at_level(logging.ERROR):
            on_message(client, None, make_msg(b"\x0a\x05"))
        client.publish.assert_not_called()
        assert client._meshdecoder_drop_count == 1
        assert len([r for r in caplog.records if r.levelno >= logging.ERROR]) == 1

    def test_no_packet_not_published(self, settings):
        client = make_client(settings)
        on_message(client, None, make_msg(envelope_bytes(with_packet=False)))
        client.publish.assert_not_called()
        assert client._meshdecoder_drop_count == 1

    def test_publish_failure_is_logged(self, settings, caplog):
        client = make_client(settings, publish_rc=mqtt.MQTT_ERR_NO_CONN)
        with caplog.at_level(logging.ERROR, logger="meshdecoder_mqtt"):
            on_message(client, None, make_msg(envelope_bytes(encrypted=b"\x01\x02")))
        assert client._meshdecoder_publish_count == 0
        assert any("Could not publish" in r.getMessage() for r in caplog.records)

    def test_publish_exception_does_not_escape(self, settings, caplog):
        client = make_client(settings)
        client.publish.side_effect = RuntimeError("socket closed")
        with caplog.at_level(logging.ERROR, logger="meshdecoder_mqtt"):
            on_message(client, None, make_msg(envelope_bytes(portnum=PortNum.TEXT_MESSAGE_APP, payload=b"x")))
        assert any("socket closed" in r.getMessage() for r in caplog.records)


class TestClient:
    def test_on_connect_subscribes(self, settings):
        client = make_client(settings)
        client.subscribe.return_value = (mqtt.MQTT_ERR_SUCCESS, 1)
        on_connect(client, None, None, 0)
        client.subscribe.assert_called_once_with("msh/PL/2/e/#", qos=0)

    def test_on_connect_failure_does_not_subscribe(self, settings):
        client = make_client(settings)
        on_connect(client, None, None, 5)
        client.subscribe.assert_not_called()

    def test_build_client_wires_callbacks(self, settings):
        client = build_client(settings)
        assert client.on_message is meshdecoder_mqtt.on_message
        assert client.on_connect is meshdecoder_mqtt.on_connect
        assert client._meshdecoder_settings is settings
        assert client._meshdecoder_rx_count == 0
