from __future__ import annotations

from typing import Any

import pytest
from meshtastic.protobuf.mesh_pb2 import MeshPacket
from meshtastic.protobuf.mqtt_pb2 import ServiceEnvelope

from meshdecoder_mqtt import Settings

NODE_ID = 0x11223344
BROADCAST = 0xFFFFFFFF


def build_envelope(
    *,
    portnum: int | None = None,
    payload: bytes = b"",
    encrypted: bytes | None = None,
    with_packet: bool = True,
) -> ServiceEnvelope:
    """Build a ServiceEnvelope the way a gateway node publishes it."""
    envelope = ServiceEnvelope(channel_id="LongFast", gateway_id="!deadbeef")
    if not with_packet:
        return envelope
    packet = MeshPacket(id=1234, to=BROADCAST, channel=8, hop_limit=3)
    setattr(packet, "from", NODE_ID)
    if encrypted is not None:
        packet.encrypted = encrypted
    elif portnum is not None:
        packet.decoded.portnum = portnum
        packet.decoded.payload = payload
    envelope.packet.CopyFrom(packet)
    return envelope


def envelope_bytes(**kwargs: Any) -> bytes:
    return build_envelope(**kwargs).SerializeToString()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        broker="localhost",
        port=1883,
        root_topic="msh/PL",
        username=None,
        password=None,
        client_id="meshdecoder-test",
        keepalive=60,
        tls=False,
        insecure_tls=False,
        qos=0,
        log_level="warn",
        preserve_field_names=False,
        verbose_mqtt=False,
    )
