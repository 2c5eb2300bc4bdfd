# Copyright 2024 FANET Mesh Contributors
# SPDX-License-Identifier: Apache-2.0
"""
Pytest fixtures for FANET tests.

Provides mock transports, a real simulated scheduler and engine factories
for exercising the protocol engine one message at a time.
"""

import pytest
from unittest.mock import Mock
import sys
import os

# Add repository root to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from fanet.mesh.engine import ProtocolEngine, ProtocolSettings
from fanet.mesh.interfaces import Transport
from fanet.mesh.messages import decode_message
from fanet.mesh.neighbors import NeighborTable, Position
from fanet.mobility import StaticMobility
from fanet.simulation import EventScheduler


@pytest.fixture
def scheduler():
    """Simulated clock starting at t=0."""
    return EventScheduler()


@pytest.fixture
def mock_transport():
    """Mock datagram transport accepting every send."""
    transport = Mock(spec=Transport)
    transport.send_unicast = Mock(return_value=True)
    transport.send_broadcast = Mock(return_value=True)
    transport.bind = Mock(return_value=None)
    return transport


@pytest.fixture
def outbox(mock_transport):
    """Decoded messages sent through mock_transport as (address, message); address None = broadcast."""
    def _sent():
        messages = []
        for c in mock_transport.send_unicast.call_args_list:
            data, address, _port = c[0]
            messages.append((address, decode_message(data)))
        for c in mock_transport.send_broadcast.call_args_list:
            data, _port = c[0]
            messages.append((None, decode_message(data)))
        return messages
    return _sent


@pytest.fixture
def origin_mobility():
    return StaticMobility(Position(0.0, 0.0, 0.0))


@pytest.fixture
def neighbor_table(origin_mobility):
    """Neighbor table owned by a node at the origin."""
    return NeighborTable(origin_mobility)


@pytest.fixture
def make_engine(mock_transport, scheduler):
    """Factory for engines on the shared mock transport and scheduler."""
    def _make(address="10.0.0.2", node_index=1, is_gcs=False,
              position=Position(0.0, 0.0, 0.0), **settings):
        return ProtocolEngine(
            address=address,
            node_index=node_index,
            is_gcs=is_gcs,
            position_provider=StaticMobility(position),
            transport=mock_transport,
            scheduler=scheduler,
            settings=ProtocolSettings(**settings),
        )
    return _make


@pytest.fixture
def uav_engine(make_engine):
    """UAV at the origin with a 1000m range."""
    return make_engine()


@pytest.fixture
def gcs_engine(make_engine):
    """GCS at the origin with a 1000m range."""
    return make_engine(address="10.0.0.1", node_index=0, is_gcs=True)


@pytest.fixture
def scenario_nodes():
    """GCS plus three UAVs in a line, 800m apart."""
    nodes = [{
        "name": "GCS",
        "address": "10.0.0.1",
        "is_gcs": True,
        "mobility": {"model": "static", "x": 0.0, "y": 0.0, "z": 0.0},
    }]
    for i in range(1, 4):
        nodes.append({
            "name": f"UAV {i}",
            "address": f"10.0.0.{i + 1}",
            "mobility": {"model": "static", "x": 800.0 * i, "y": 0.0, "z": 0.0},
        })
    return nodes
