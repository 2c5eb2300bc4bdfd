# Copyright 2024 FANET Mesh Contributors
# SPDX-License-Identifier: Apache-2.0
"""
Tests for the protocol message codec.

Tests the position string format, frame layout and rejection of
malformed frames.
"""

import json
import pytest
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from fanet.mesh.messages import (
    MessageDecodeError,
    MessageType,
    NeighborDiscovery,
    RouteRequest,
    decode_message,
    encode_message,
    format_position_info,
    parse_position_info,
)
from fanet.mesh.neighbors import NodeRole, Position


def frame(msg_type: int, fields) -> bytes:
    return bytes([msg_type]) + json.dumps(fields).encode("utf-8")


class TestPositionInfo:
    """Tests for the "x,y,z,ROLE" position string."""

    def test_format_uses_two_decimals(self):
        text = format_position_info(Position(400, 0, 12.5), NodeRole.GCS)

        assert text == "400.00,0.00,12.50,GCS"

    def test_parse_reads_role(self):
        position, role = parse_position_info("1.50,-2.00,30.00,UAV")

        assert position == Position(1.5, -2.0, 30.0)
        assert role is NodeRole.UAV

    def test_unknown_role_is_uav(self):
        _, role = parse_position_info("0,0,0,BALLOON")

        assert role is NodeRole.UAV

    def test_parse_rejects_short_string(self):
        with pytest.raises(MessageDecodeError):
            parse_position_info("1.0,2.0,GCS")

    def test_parse_rejects_bad_number(self):
        with pytest.raises(MessageDecodeError):
            parse_position_info("one,2.0,3.0,GCS")

    @pytest.mark.parametrize("text", ["nan,0,0,GCS", "0,inf,0,UAV", "0,0,-inf,GCS"])
    def test_parse_rejects_non_finite_coordinates(self, text):
        with pytest.raises(MessageDecodeError):
            parse_position_info(text)


class TestFrames:
    """Tests for encoding and decoding frames."""

    def test_frame_starts_with_type_byte(self):
        message = NeighborDiscovery(3, 12.5, Position(1, 2, 3), NodeRole.UAV)

        data = encode_message(message)

        assert data[0] == MessageType.NEIGHBOR_DISCOVERY
        assert json.loads(data[1:]) == {
            "nodeIndex": 3,
            "timestamp": 12.5,
            "positionInfo": "1.00,2.00,3.00,UAV",
        }

    def test_route_request_survives_encoding(self):
        message = RouteRequest("GCS", "10.0.0.4", 7, 2, 5)

        assert decode_message(encode_message(message)) == message

    def test_integer_timestamp_is_accepted(self):
        message = decode_message(frame(1, {"nodeIndex": 1, "timestamp": 4, "positionInfo": "0,0,0,GCS"}))

        assert message.timestamp == 4.0
        assert message.role is NodeRole.GCS

    def test_only_position_messages_carry_position(self):
        assert NeighborDiscovery.carries_position is True
        assert RouteRequest.carries_position is False


class TestMalformedFrames:
    """Malformed frames must raise MessageDecodeError."""

    @pytest.mark.parametrize("data", [
        b"",
        b"\x05",
        frame(99, {"x": 1}),
        b"\x05not json",
        frame(5, [1, 2, 3]),
    ])
    def test_rejects_bad_frames(self, data):
        with pytest.raises(MessageDecodeError):
            decode_message(data)

    def test_rejects_missing_field(self):
        fields = {"destination": "GCS", "originator": "a", "sequenceNumber": 1, "hopCount": 0}

        with pytest.raises(MessageDecodeError, match="ttl"):
            decode_message(frame(MessageType.ROUTE_REQUEST, fields))

    def test_rejects_wrong_field_type(self):
        fields = {"destination": "GCS", "originator": "a", "sequenceNumber": "1", "hopCount": 0, "ttl": 3}

        with pytest.raises(MessageDecodeError):
            decode_message(frame(MessageType.ROUTE_REQUEST, fields))

    def test_rejects_boolean_as_number(self):
        fields = {"sourceNodeId": True, "data": "x"}

        with pytest.raises(MessageDecodeError):
            decode_message(frame(MessageType.SENSOR_DATA, fields))
