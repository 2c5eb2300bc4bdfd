# Copyright 2024 FANET Mesh Contributors
# SPDX-License-Identifier: Apache-2.0
"""
FANET protocol messages and wire codec.

Every frame is one type byte followed by a UTF-8 JSON object with the
message's fields. Position-bearing messages carry their position as the
comma-joined string "x,y,z,ROLE" with two decimals per coordinate, which
keeps them readable by peers that only understand that format.
"""

import json
import logging
import math
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, ClassVar, Dict, Tuple, Type

from .neighbors import NodeRole, Position

logger = logging.getLogger(__name__)


class MessageType(IntEnum):
    """Protocol message types (wire values)."""
    NEIGHBOR_DISCOVERY = 1
    NEIGHBOR_RESPONSE = 2
    SENSOR_DATA = 3
    DATA_RELAY = 4
    ROUTE_REQUEST = 5
    ROUTE_REPLY = 6
    MESH_DATA = 7


class MessageDecodeError(ValueError):
    """Raised when a frame is malformed or misses required fields."""


def format_position_info(position: Position, role: NodeRole) -> str:
    """Encode a position and role as "x,y,z,ROLE"."""
    return "%.2f,%.2f,%.2f,%s" % (position.x, position.y, position.z, role.value)


def parse_position_info(text: str) -> Tuple[Position, NodeRole]:
    """Decode an "x,y,z,ROLE" string; any role other than GCS is a UAV."""
    tokens = text.split(",")
    if len(tokens) < 4:
        raise MessageDecodeError(f"positionInfo needs 4 fields, got {len(tokens)}")
    try:
        position = Position(float(tokens[0]), float(tokens[1]), float(tokens[2]))
    except ValueError as e:
        raise MessageDecodeError(f"Bad coordinate in positionInfo: {e}") from e
    if not all(math.isfinite(c) for c in (position.x, position.y, position.z)):
        raise MessageDecodeError(f"Non-finite coordinate in positionInfo: {text}")
    role = NodeRole.GCS if tokens[3] == "GCS" else NodeRole.UAV
    return position, role


def _require(fields: Dict[str, Any], name: str, kind: type) -> Any:
    if name not in fields:
        raise MessageDecodeError(f"Missing field: {name}")
    value = fields[name]
    if kind is float and isinstance(value, int) and not isinstance(value, bool):
        return float(value)
    # bool is an int subclass
    if isinstance(value, bool) or not isinstance(value, kind):
        raise MessageDecodeError(f"Field {name} must be {kind.__name__}")
    return value


@dataclass
class PositionAnnouncement:
    """Shared shape of NEIGHBOR_DISCOVERY and NEIGHBOR_RESPONSE."""
    node_index: int
    timestamp: float
    position: Position
    role: NodeRole

    MSG_TYPE: ClassVar[MessageType]
    carries_position: ClassVar[bool] = True

    def to_fields(self) -> Dict[str, Any]:
        return {
            "nodeIndex": self.node_index,
            "timestamp": self.timestamp,
            "positionInfo": format_position_info(self.position, self.role),
        }

    @classmethod
    def from_fields(cls, fields: Dict[str, Any]):
        position, role = parse_position_info(_require(fields, "positionInfo", str))
        return cls(
            node_index=_require(fields, "nodeIndex", int),
            timestamp=_require(fields, "timestamp", float),
            position=position,
            role=role,
        )


@dataclass
class NeighborDiscovery(PositionAnnouncement):
    MSG_TYPE: ClassVar[MessageType] = MessageType.NEIGHBOR_DISCOVERY


@dataclass
class NeighborResponse(PositionAnnouncement):
    MSG_TYPE: ClassVar[MessageType] = MessageType.NEIGHBOR_RESPONSE


@dataclass
class SensorData:
    """Sensor reading sent straight to the GCS."""
    source_node_id: int
    data: str

    MSG_TYPE: ClassVar[MessageType] = MessageType.SENSOR_DATA
    carries_position: ClassVar[bool] = False

    def to_fields(self) -> Dict[str, Any]:
        return {"sourceNodeId": self.source_node_id, "data": self.data}

    @classmethod
    def from_fields(cls, fields: Dict[str, Any]) -> "SensorData":
        return cls(
            source_node_id=_require(fields, "sourceNodeId", int),
            data=_require(fields, "data", str),
        )


@dataclass
class DataRelay:
    """Sensor reading relayed hop by hop toward a GCS neighbor."""
    source_node_id: int
    data: str
    final_destination: str
    hop_count: int

    MSG_TYPE: ClassVar[MessageType] = MessageType.DATA_RELAY
    carries_position: ClassVar[bool] = False

    def to_fields(self) -> Dict[str, Any]:
        return {
            "sourceNodeId": self.source_node_id,
            "data": self.data,
            "finalDestination": self.final_destination,
            "hopCount": self.hop_count,
        }

    @classmethod
    def from_fields(cls, fields: Dict[str, Any]) -> "DataRelay":
        return cls(
            source_node_id=_require(fields, "sourceNodeId", int),
            data=_require(fields, "data", str),
            final_destination=_require(fields, "finalDestination", str),
            hop_count=_require(fields, "hopCount", int),
        )


@dataclass
class RouteRequest:
    """RREQ flooded to discover a path to `destination`."""
    destination: str
    originator: str
    sequence_number: int
    hop_count: int
    ttl: int

    MSG_TYPE: ClassVar[MessageType] = MessageType.ROUTE_REQUEST
    carries_position: ClassVar[bool] = False

    def to_fields(self) -> Dict[str, Any]:
        return {
            "destination": self.destination,
            "originator": self.originator,
            "sequenceNumber": self.sequence_number,
            "hopCount": self.hop_count,
            "ttl": self.ttl,
        }

    @classmethod
    def from_fields(cls, fields: Dict[str, Any]) -> "RouteRequest":
        return cls(
            destination=_require(fields, "destination", str),
            originator=_require(fields, "originator", str),
            sequence_number=_require(fields, "sequenceNumber", int),
            hop_count=_require(fields, "hopCount", int),
            ttl=_require(fields, "ttl", int),
        )


@dataclass
class RouteReply:
    """RREP travelling back toward the RREQ originator."""
    destination: str
    originator: str
    hop_count: int

    MSG_TYPE: ClassVar[MessageType] = MessageType.ROUTE_REPLY
    carries_position: ClassVar[bool] = False

    def to_fields(self) -> Dict[str, Any]:
        return {
            "destination": self.destination,
            "originator": self.originator,
            "hopCount": self.hop_count,
        }

    @classmethod
    def from_fields(cls, fields: Dict[str, Any]) -> "RouteReply":
        return cls(
            destination=_require(fields, "destination", str),
            originator=_require(fields, "originator", str),
            hop_count=_require(fields, "hopCount", int),
        )


@dataclass
class MeshData:
    """Sensor reading forwarded along the routing table."""
    source_node_id: int
    data: str
    destination: str
    ttl: int

    MSG_TYPE: ClassVar[MessageType] = MessageType.MESH_DATA
    carries_position: ClassVar[bool] = False

    def to_fields(self) -> Dict[str, Any]:
        return {
            "sourceNodeId": self.source_node_id,
            "data": self.data,
            "destination": self.destination,
            "ttl": self.ttl,
        }

    @classmethod
    def from_fields(cls, fields: Dict[str, Any]) -> "MeshData":
        return cls(
            source_node_id=_require(fields, "sourceNodeId", int),
            data=_require(fields, "data", str),
            destination=_require(fields, "destination", str),
            ttl=_require(fields, "ttl", int),
        )


MESSAGE_CLASSES: Dict[MessageType, Type] = {
    cls.MSG_TYPE: cls
    for cls in (
        NeighborDiscovery,
        NeighborResponse,
        SensorData,
        DataRelay,
        RouteRequest,
        RouteReply,
        MeshData,
    )
}


def encode_message(message) -> bytes:
    """Serialize a protocol message for datagram transmission."""
    body = json.dumps(message.to_fields()).encode("utf-8")
    return bytes([int(message.MSG_TYPE)]) + body


def decode_message(data: bytes):
    """
    Parse a datagram into a protocol message.

    Raises:
        MessageDecodeError: If the frame is empty, has an unknown type
            byte, is not a JSON object, or misses a required field
    """
    if len(data) < 2:
        raise MessageDecodeError("Frame too short")

    try:
        msg_type = MessageType(data[0])
    except ValueError:
        raise MessageDecodeError(f"Unknown message type: {data[0]}")

    try:
        fields = json.loads(data[1:].decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MessageDecodeError(f"Invalid payload: {e}") from e

    if not isinstance(fields, dict):
        raise MessageDecodeError("Payload is not an object")

    return MESSAGE_CLASSES[msg_type].from_fields(fields)
