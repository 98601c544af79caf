"""Port-dispatched payload decoder for Meshtastic MQTT envelopes.

High-level flow:
1. Parse raw bytes into a ``ServiceEnvelope``.
2. Drop the message when the envelope carries no packet.
3. Serialize the envelope into a JSON-ready document.
4. For ``decoded`` packets, look up the port's decoder strategy.
5. Return a new document with ``packet.decoded.payload`` replaced by the
   decoded value (text or nested message dict).

Encrypted payloads, ports without a decoder and payloads that fail to parse
are passed through as the base64 string protobuf's JSON mapping produces.
"""

from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Mapping, Union

from google.protobuf import json_format
from google.protobuf.message import DecodeError, Message
from meshtastic.protobuf.admin_pb2 import AdminMessage
from meshtastic.protobuf.mesh_pb2 import NeighborInfo
from meshtastic.protobuf.mesh_pb2 import Position
from meshtastic.protobuf.mesh_pb2 import Routing
from meshtastic.protobuf.mesh_pb2 import User
from meshtastic.protobuf.mesh_pb2 import Waypoint
from meshtastic.protobuf.mqtt_pb2 import MapReport
from meshtastic.protobuf.mqtt_pb2 import ServiceEnvelope
from meshtastic.protobuf.paxcount_pb2 import Paxcount
from meshtastic.protobuf.portnums_pb2 import PortNum
from meshtastic.protobuf.powermon_pb2 import PowerStressMessage
from meshtastic.protobuf.remote_hardware_pb2 import HardwareMessage
from meshtastic.protobuf.storeforward_pb2 import StoreAndForward
from meshtastic.protobuf.telemetry_pb2 import Telemetry

logger = logging.getLogger(__name__)

PAYLOAD_PATH: tuple[str, ...] = ("packet", "decoded", "payload")


class MeshDecoderError(Exception):
    """Base class for errors raised by the decoder."""


class MalformedEnvelope(MeshDecoderError):
    """Raw bytes are not a ServiceEnvelope."""


@dataclass(frozen=True)
class NoDecoder:
    """Known port whose payload is left as raw bytes."""


@dataclass(frozen=True)
class PlainText:
    encoding: str = "utf-8"


@dataclass(frozen=True)
class StructuredSchema:
    message_type: type[Message]

    @property
    def name(self) -> str:
        return self.message_type.DESCRIPTOR.full_name


@dataclass(frozen=True)
class UnknownPort:
    """Port number with no registry entry."""

    portnum: int


DecoderStrategy = Union[NoDecoder, PlainText, StructuredSchema]

NO_DECODER = NoDecoder()
UTF8_TEXT = PlainText("utf-8")
ASCII_TEXT = PlainText("ascii")


# Port number -> decoder strategy. Every port the firmware documents has an
# entry; ports mapped to NO_DECODER are known but carry opaque payloads.
PORT_DECODERS: Mapping[int, DecoderStrategy] = MappingProxyType(
    {
        0: NO_DECODER,  # UNKNOWN_APP
        1: UTF8_TEXT,  # TEXT_MESSAGE_APP
        2: StructuredSchema(HardwareMessage),  # REMOTE_HARDWARE_APP
        3: StructuredSchema(Position),  # POSITION_APP
        4: StructuredSchema(User),  # NODEINFO_APP
        5: StructuredSchema(Routing),  # ROUTING_APP
        6: StructuredSchema(AdminMessage),  # ADMIN_APP
        7: NO_DECODER,  # TEXT_MESSAGE_COMPRESSED_APP
        8: StructuredSchema(Waypoint),  # WAYPOINT_APP
        9: NO_DECODER,  # AUDIO_APP
        10: UTF8_TEXT,  # DETECTION_SENSOR_APP
        11: UTF8_TEXT,  # ALERT_APP
        12: NO_DECODER,  # KEY_VERIFICATION_APP
        13: NO_DECODER,  # REMOTE_SHELL_APP
        32: ASCII_TEXT,  # REPLY_APP
        33: NO_DECODER,  # IP_TUNNEL_APP
        34: StructuredSchema(Paxcount),  # PAXCOUNTER_APP
        35: NO_DECODER,  # STORE_FORWARD_PLUSPLUS_APP
        36: NO_DECODER,  # NODE_STATUS_APP
        64: NO_DECODER,  # SERIAL_APP
        65: StructuredSchema(StoreAndForward),  # STORE_FORWARD_APP
        66: ASCII_TEXT,  # RANGE_TEST_APP
        67: StructuredSchema(Telemetry),  # TELEMETRY_APP
        68: NO_DECODER,  # ZPS_APP
        69: NO_DECODER,  # SIMULATOR_APP
        70: NO_DECODER,  # TRACEROUTE_APP
        71: StructuredSchema(NeighborInfo),  # NEIGHBORINFO_APP
        72: NO_DECODER,  # ATAK_PLUGIN
        73: StructuredSchema(MapReport),  # MAP_REPORT_APP
        74: StructuredSchema(PowerStressMessage),  # POWERSTRESS_APP
        75: NO_DECODER,  # LORAWAN_BRIDGE
        76: NO_DECODER,  # RETICULUM_TUNNEL_APP
        77: NO_DECODER,  # CAYENNE_APP
        78: NO_DECODER,  # ATAK_PLUGIN_V2
        112: NO_DECODER,  # GROUPALARM_APP
        256: NO_DECODER,  # PRIVATE_APP
        257: NO_DECODER,  # ATAK_FORWARDER
        # upper bound of the port range, never sent on the wire
        511: NO_DECODER,  # MAX
    }
)


def lookup(portnum: int) -> DecoderStrategy | UnknownPort:
    """Return the decoder strategy for ``portnum`` or ``UnknownPort``."""
    strategy = PORT_DECODERS.get(int(portnum))
    if strategy is None:
        return UnknownPort(int(portnum))
    return strategy


def port_label(portnum: int) -> str:
    try:
        return f"{PortNum.Name(portnum)} ({portnum})"
    except ValueError:
        return str(portnum)


def to_document(message: Message, *, preserve_field_names: bool = False) -> dict[str, Any]:
    """Serialize a protobuf message with defaults emitted and enums as names."""
    return json_format.MessageToDict(
        message,
        always_print_fields_with_no_presence=True,
        preserving_proto_field_name=preserve_field_names,
        use_integers_for_enums=False,
    )


def replace_path(document: Mapping[str, Any], path: tuple[str, ...], value: Any) -> dict[str, Any]:
    """Return a copy of ``document`` with the value at ``path`` replaced.

    Only the dicts along ``path`` are copied; siblings are shared with the
    input, which is left untouched.
    """
    head, *rest = path
    updated = dict(document)
    if rest:
        updated[head] = replace_path(document.get(head) or {}, tuple(rest), value)
    else:
        updated[head] = value
    return updated


def parse_envelope(raw: Any) -> ServiceEnvelope:
    """Parse raw bytes into a ServiceEnvelope or raise MalformedEnvelope."""
    if not isinstance(raw, (bytes, bytearray, memoryview)):
        raise MalformedEnvelope(f"expected bytes, got {type(raw).__name__}")
    envelope = ServiceEnvelope()
    try:
        envelope.ParseFromString(bytes(raw))
    except (DecodeError, UnicodeDecodeError) as exc:
        raise MalformedEnvelope(f"not a ServiceEnvelope: {exc}") from exc
    return envelope


def decode_payload(
    strategy: DecoderStrategy | UnknownPort,
    payload: bytes,
    *,
    preserve_field_names: bool = False,
) -> Any:
    """Apply ``strategy`` to ``payload``.

    Returns ``None`` when the strategy leaves the payload undecoded. Raises
    ``DecodeError`` (or ``UnicodeDecodeError`` on the pure-python protobuf
    backend) when a structured payload does not parse.
    """
    match strategy:
        case PlainText(encoding=encoding):
            return payload.decode(encoding, errors="replace")
        case StructuredSchema(message_type=message_type):
            message = message_type.FromString(payload)
            return to_document(message, preserve_field_names=preserve_field_names)
        case NoDecoder() | UnknownPort():
            return None
    raise TypeError(f"unsupported decoder strategy: {strategy!r}")


def encode_payload(portnum: int, value: Any) -> bytes:
    """Inverse of decode_payload for ``portnum``'s strategy.

    Ports that are not decoded expect the base64 string found in the
    serialized envelope.
    """
    match lookup(portnum):
        case PlainText(encoding=encoding):
            return value.encode(encoding)
        case StructuredSchema(message_type=message_type):
            return json_format.ParseDict(value, message_type()).SerializeToString()
        case NoDecoder() | UnknownPort():
            return base64.b64decode(value)
    raise TypeError(f"no encoder for port {portnum}")


def dispatch(
    envelope: ServiceEnvelope,
    document: Mapping[str, Any],
    *,
    preserve_field_names: bool = False,
) -> dict[str, Any] | None:
    """Decode the envelope's payload and merge it into ``document``.

    Returns ``None`` when the envelope has no packet (nothing to emit).
    Otherwise returns a document; the payload field is replaced only when
    decoding succeeded.
    """
    if not envelope.HasField("packet"):
        logger.debug("No packet in ServiceEnvelope, dropping message")
        return None

    packet = envelope.packet
    variant = packet.WhichOneof("payload_variant")
    if variant == "encrypted":
        logger.debug("Packet id=%s is encrypted, payload left as-is", packet.id)
        return dict(document)
    if variant != "decoded":
        logger.debug("Packet id=%s has no payload variant", packet.id)
        return dict(document)

    portnum = packet.decoded.portnum
    strategy = lookup(portnum)
    match strategy:
        case UnknownPort():
            logger.debug("Unknown portnum %s, payload left as-is", portnum)
            return dict(document)
        case NoDecoder():
            logger.debug("No decoder set for portnum %s", port_label(portnum))
            return dict(document)

    try:
        value = decode_payload(
            strategy,
            packet.decoded.payload,
            preserve_field_names=preserve_field_names,
        )
    except (DecodeError, UnicodeDecodeError) as exc:
        # only StructuredSchema raises here; the pure-python protobuf backend
        # reports invalid UTF-8 in string fields as UnicodeDecodeError
        logger.error(
            "Could not decode payload of packet id=%s portnum=%s as %s: %s",
            packet.id,
            port_label(portnum),
            strategy.name,
            exc,
        )
        return dict(document)

    logger.debug("Decoded payload of packet id=%s portnum=%s", packet.id, port_label(portnum))
    return replace_path(document, PAYLOAD_PATH, value)


def decode_message(raw: Any, *, preserve_field_names: bool = False) -> dict[str, Any] | None:
    """Full pipeline: raw envelope bytes -> decoded document, or None if dropped."""
    try:
        envelope = parse_envelope(raw)
    except MalformedEnvelope as exc:
        logger.error("Dropping malformed envelope: %s", exc)
        return None

    if not envelope.HasField("packet"):
        logger.debug("No packet in ServiceEnvelope, dropping message")
        return None

    document = to_document(envelope, preserve_field_names=preserve_field_names)
    return dispatch(envelope, document, preserve_field_names=preserve_field_names)
