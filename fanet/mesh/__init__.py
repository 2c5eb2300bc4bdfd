# Copyright 2024 FANET Mesh Contributors
# SPDX-License-Identifier: Apache-2.0
"""
Mesh protocol module for the FANET node.

This module provides the per-node protocol engine and its state:
- Neighbor discovery and freshness tracking (neighbors.py)
- Reactive RREQ/RREP routing and flood suppression (routing.py)
- Protocol message types and the wire codec (messages.py)
- Collaborator interfaces (interfaces.py)
- Timer-driven protocol engine (engine.py)
"""

from .neighbors import NeighborTable, NeighborEntry, NodeRole, Position
from .routing import RoutingTable, RouteEntry, RouteRequestCache
from .messages import MessageType, MessageDecodeError, encode_message, decode_message
from .engine import ProtocolEngine, ProtocolSettings, NodeState, GCS_DESTINATION

__all__ = [
    "NeighborTable",
    "NeighborEntry",
    "NodeRole",
    "Position",
    "RoutingTable",
    "RouteEntry",
    "RouteRequestCache",
    "MessageType",
    "MessageDecodeError",
    "encode_message",
    "decode_message",
    "ProtocolEngine",
    "ProtocolSettings",
    "NodeState",
    "GCS_DESTINATION",
]
