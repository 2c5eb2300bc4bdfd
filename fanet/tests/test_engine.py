# Copyright 2024 FANET Mesh Contributors
# SPDX-License-Identifier: Apache-2.0
"""
Tests for the FANET protocol engine.

Messages are fed through handle_datagram on a mock transport; outbound
traffic is read back with the outbox fixture.
"""

import json
import pytest
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from fanet.mesh.engine import DeliveryStrategy, NodeState
from fanet.mesh.messages import (
    DataRelay,
    MeshData,
    NeighborDiscovery,
    NeighborResponse,
    RouteReply,
    RouteRequest,
    SensorData,
    encode_message,
)
from fanet.mesh.neighbors import NodeRole, Position


def deliver(engine, message, sender):
    engine.handle_datagram(encode_message(message), sender)


def discovery_from(x, role=NodeRole.UAV, index=9):
    return NeighborDiscovery(index, 0.0, Position(x, 0.0, 0.0), role)


class TestAdmission:
    """Tests for inbound datagram filtering."""

    def test_loopback_is_dropped(self, uav_engine, outbox):
        deliver(uav_engine, discovery_from(10.0), "127.0.0.1")

        assert len(uav_engine.neighbors) == 0
        assert uav_engine.metrics["dropped_self"] == 1
        assert outbox() == []

    def test_own_address_is_dropped(self, uav_engine):
        deliver(uav_engine, discovery_from(10.0), uav_engine.address)

        assert len(uav_engine.neighbors) == 0
        assert uav_engine.metrics["dropped_self"] == 1

    def test_malformed_datagram_is_counted_and_ignored(self, uav_engine, outbox):
        uav_engine.handle_datagram(b"\x05{broken", "10.0.0.9")

        assert uav_engine.metrics["packets_received"] == 1
        assert uav_engine.metrics["malformed_messages"] == 1
        assert outbox() == []

    @pytest.mark.parametrize("position_info", ["nan,0,0,GCS", "inf,0,0,GCS"])
    def test_non_finite_position_is_malformed(self, uav_engine, outbox, position_info):
        data = bytes([1]) + json.dumps(
            {"nodeIndex": 9, "timestamp": 0.0, "positionInfo": position_info}
        ).encode("utf-8")

        uav_engine.handle_datagram(data, "10.0.0.9")

        assert len(uav_engine.neighbors) == 0
        assert uav_engine.known_gcs == []
        assert uav_engine.metrics["malformed_messages"] == 1
        assert outbox() == []

    def test_out_of_range_position_message_is_dropped(self, uav_engine, outbox):
        response = NeighborResponse(9, 0.0, Position(5000.0, 0.0, 0.0), NodeRole.GCS)

        deliver(uav_engine, response, "10.0.0.9")

        assert "10.0.0.9" not in uav_engine.neighbors
        assert uav_engine.known_gcs == []
        assert uav_engine.metrics["dropped_out_of_range"] == 1
        assert outbox() == []


class TestNeighborDiscovery:
    """Tests for discovery and response handling."""

    def test_in_range_gcs_is_added_and_answered(self, uav_engine, outbox):
        deliver(uav_engine, discovery_from(400.0, NodeRole.GCS), "10.0.0.1")

        entry = uav_engine.neighbors.get("10.0.0.1")
        assert entry is not None
        assert entry.role is NodeRole.GCS
        assert entry.distance == 400.0
        assert uav_engine.known_gcs == ["10.0.0.1"]

        sent = outbox()
        assert len(sent) == 1
        address, message = sent[0]
        assert address == "10.0.0.1"
        assert isinstance(message, NeighborResponse)
        assert message.role is NodeRole.UAV
        assert message.node_index == uav_engine.node_index

    def test_out_of_range_discovery_is_ignored(self, uav_engine, outbox):
        deliver(uav_engine, discovery_from(1200.0, NodeRole.UAV), "10.0.0.3")

        assert len(uav_engine.neighbors) == 0
        assert outbox() == []

    def test_response_adds_neighbor_without_reply(self, uav_engine, outbox):
        response = NeighborResponse(4, 1.0, Position(200.0, 0.0, 0.0), NodeRole.UAV)

        deliver(uav_engine, response, "10.0.0.4")

        assert "10.0.0.4" in uav_engine.neighbors
        assert outbox() == []

    def test_send_neighbor_discovery_broadcasts_position(self, make_engine, outbox):
        engine = make_engine(position=Position(12.0, 34.0, 56.0))

        engine.send_neighbor_discovery()

        (address, message), = outbox()
        assert address is None
        assert isinstance(message, NeighborDiscovery)
        assert message.position == Position(12.0, 34.0, 56.0)
        assert engine.metrics["packets_sent"] == 1


class TestSensorDataStrategy:
    """Tests for delivery strategy selection."""

    def test_direct_to_gcs_neighbor(self, uav_engine, outbox):
        deliver(uav_engine, discovery_from(400.0, NodeRole.GCS), "10.0.0.1")
        uav_engine.transport.send_unicast.reset_mock()

        strategy = uav_engine.send_sensor_data()

        assert strategy is DeliveryStrategy.DIRECT
        (address, message), = outbox()
        assert address == "10.0.0.1"
        assert isinstance(message, SensorData)
        assert message.data.startswith("UAV_1_SENSOR: Pos(0.0,0.0,0.0)")
        assert uav_engine.metrics["data_packets_sent"] == 1
        uav_engine.transport.send_broadcast.assert_not_called()

    def test_direct_beats_existing_mesh_route(self, uav_engine):
        uav_engine.routing_table.update("GCS", "10.0.0.7", 2, now=0.0)
        uav_engine.neighbors.upsert("10.0.0.1", Position(300.0, 0.0, 0.0), NodeRole.GCS, now=0.0)

        strategy, outbound = uav_engine.plan_sensor_data("reading")

        assert strategy is DeliveryStrategy.DIRECT
        assert outbound[0].address == "10.0.0.1"

    def test_planning_discovery_records_no_route_request(self, uav_engine, outbox):
        uav_engine.neighbors.upsert("10.0.0.3", Position(500.0, 0.0, 0.0), NodeRole.UAV, now=0.0)

        strategy, outbound = uav_engine.plan_sensor_data("reading")

        assert strategy is DeliveryStrategy.ROUTE_DISCOVERY
        assert [type(o.message) for o in outbound] == [SensorData]
        assert uav_engine.sequence_number == 0
        assert len(uav_engine.rreq_cache) == 0
        assert outbox() == []

    def test_mesh_route_to_gcs(self, uav_engine, outbox):
        uav_engine.routing_table.update("GCS", "10.0.0.7", 2, now=0.0)

        strategy = uav_engine.send_sensor_data()

        assert strategy is DeliveryStrategy.MESH
        (address, message), = outbox()
        assert address == "10.0.0.7"
        assert isinstance(message, MeshData)
        assert message.destination == "GCS"
        assert message.ttl == 10
        assert uav_engine.metrics["mesh_data_sent"] == 1

    def test_route_to_unrelated_node_is_not_a_gcs_route(self, uav_engine):
        uav_engine.routing_table.update("10.0.0.8", "10.0.0.7", 1, now=0.0)

        assert uav_engine.find_gcs_route() is None

    def test_route_to_known_gcs_address_is_used(self, uav_engine):
        uav_engine.known_gcs.append("10.0.0.1")
        uav_engine.routing_table.update("10.0.0.1", "10.0.0.7", 3, now=0.0)

        assert uav_engine.find_gcs_route() == ("10.0.0.1", "10.0.0.7")

    def test_route_discovery_with_uav_neighbors(self, uav_engine, outbox):
        uav_engine.neighbors.upsert("10.0.0.3", Position(500.0, 0.0, 0.0), NodeRole.UAV, now=0.0)

        strategy = uav_engine.send_sensor_data()

        assert strategy is DeliveryStrategy.ROUTE_DISCOVERY
        sent = outbox()
        assert [a for a, _ in sent] == [None, None]
        request, data = sent[0][1], sent[1][1]
        assert isinstance(request, RouteRequest)
        assert request.destination == "GCS"
        assert request.originator == uav_engine.address
        assert request.sequence_number == 1
        assert request.hop_count == 0
        assert isinstance(data, SensorData)
        assert uav_engine.metrics["route_requests_sent"] == 1
        assert uav_engine.metrics["broadcast_fallbacks"] == 1

    def test_isolated_node_broadcasts_and_counts_undeliverable(self, uav_engine, outbox):
        strategy = uav_engine.send_sensor_data()

        assert strategy is DeliveryStrategy.BROADCAST
        (address, message), = outbox()
        assert address is None
        assert isinstance(message, SensorData)
        assert uav_engine.metrics["undeliverable_data"] == 1
        assert uav_engine.metrics["route_requests_sent"] == 0

    def test_legacy_relay_when_enabled(self, make_engine, outbox):
        engine = make_engine(use_legacy_relay=True)
        engine.neighbors.upsert("10.0.0.3", Position(500.0, 0.0, 0.0), NodeRole.UAV, now=0.0)

        strategy = engine.send_sensor_data()

        assert strategy is DeliveryStrategy.RELAY
        (address, message), = outbox()
        assert address == "10.0.0.3"
        assert isinstance(message, DataRelay)
        assert message.hop_count == 1
        assert engine.metrics["relays_sent"] == 1

    def test_gcs_does_not_send_sensor_data(self, gcs_engine, outbox):
        assert gcs_engine.send_sensor_data() is None
        assert outbox() == []


class TestRouteRequest:
    """Tests for RREQ flooding."""

    def test_forward_then_drop_duplicate(self, uav_engine, outbox):
        request = RouteRequest("GCS", "10.0.0.5", 7, 0, 5)

        deliver(uav_engine, request, "10.0.0.5")
        deliver(uav_engine, request, "10.0.0.6")

        sent = outbox()
        assert len(sent) == 1
        address, forwarded = sent[0]
        assert address is None
        assert forwarded == RouteRequest("GCS", "10.0.0.5", 7, 1, 4)
        assert uav_engine.metrics["route_requests_forwarded"] == 1
        assert uav_engine.metrics["route_requests_duplicate"] == 1

    def test_reverse_route_is_learned(self, uav_engine):
        deliver(uav_engine, RouteRequest("GCS", "10.0.0.5", 1, 2, 5), "10.0.0.6")

        entry = uav_engine.routing_table.get("10.0.0.5")
        assert entry.next_hop == "10.0.0.6"
        assert entry.hop_count == 3

    def test_gcs_answers_logical_destination(self, gcs_engine, outbox):
        deliver(gcs_engine, RouteRequest("GCS", "10.0.0.5", 1, 2, 5), "10.0.0.6")

        (address, reply), = outbox()
        assert address == "10.0.0.6"
        assert reply == RouteReply("GCS", "10.0.0.5", 0)
        assert gcs_engine.metrics["route_replies_sent"] == 1

    def test_node_answers_for_own_address(self, uav_engine, outbox):
        deliver(uav_engine, RouteRequest(uav_engine.address, "10.0.0.5", 1, 0, 5), "10.0.0.5")

        (address, reply), = outbox()
        assert address == "10.0.0.5"
        assert reply.destination == uav_engine.address
        assert reply.hop_count == 0

    def test_uav_does_not_answer_logical_gcs(self, uav_engine, outbox):
        deliver(uav_engine, RouteRequest("GCS", "10.0.0.5", 1, 0, 5), "10.0.0.5")

        (_, message), = outbox()
        assert isinstance(message, RouteRequest)

    def test_intermediate_reply_from_known_route(self, uav_engine, outbox):
        uav_engine.routing_table.update("GCS", "10.0.0.1", 1, now=0.0)

        deliver(uav_engine, RouteRequest("GCS", "10.0.0.5", 1, 0, 5), "10.0.0.5")

        (address, reply), = outbox()
        assert address == "10.0.0.5"
        assert reply == RouteReply("GCS", "10.0.0.5", 1)

    def test_ttl_one_is_not_forwarded(self, uav_engine, outbox):
        deliver(uav_engine, RouteRequest("GCS", "10.0.0.5", 1, 4, 1), "10.0.0.5")

        assert outbox() == []
        assert uav_engine.metrics["route_requests_expired"] == 1

    def test_ttl_zero_is_dropped_before_dedup(self, uav_engine):
        deliver(uav_engine, RouteRequest("GCS", "10.0.0.5", 1, 4, 0), "10.0.0.5")

        assert len(uav_engine.rreq_cache) == 0
        assert uav_engine.routing_table.get("10.0.0.5") is None

    def test_own_request_echo_is_suppressed(self, uav_engine, outbox):
        request = uav_engine.send_route_request()
        uav_engine.transport.send_broadcast.reset_mock()

        echo = RouteRequest(request.destination, request.originator, request.sequence_number, 1, 9)
        deliver(uav_engine, echo, "10.0.0.3")

        assert outbox() == []
        assert uav_engine.metrics["route_requests_duplicate"] == 1

    def test_sequence_number_increments(self, uav_engine):
        first = uav_engine.send_route_request()
        second = uav_engine.send_route_request()

        assert second.sequence_number == first.sequence_number + 1


class TestRouteReply:
    """Tests for RREP handling."""

    def test_originator_learns_route(self, uav_engine, outbox):
        deliver(uav_engine, RouteReply("GCS", uav_engine.address, 1), "10.0.0.3")

        assert uav_engine.routing_table.lookup("GCS", uav_engine.now()) == "10.0.0.3"
        assert uav_engine.routing_table.get("GCS").hop_count == 2
        assert uav_engine.metrics["routes_discovered"] == 1
        assert outbox() == []

    def test_intermediate_forwards_toward_originator(self, uav_engine, outbox):
        uav_engine.routing_table.update("10.0.0.5", "10.0.0.6", 2, now=0.0)

        deliver(uav_engine, RouteReply("GCS", "10.0.0.5", 0), "10.0.0.1")

        assert uav_engine.routing_table.lookup("GCS", 0.0) == "10.0.0.1"
        (address, reply), = outbox()
        assert address == "10.0.0.6"
        assert reply == RouteReply("GCS", "10.0.0.5", 1)

    def test_intermediate_without_reverse_route_drops(self, uav_engine, outbox):
        deliver(uav_engine, RouteReply("GCS", "10.0.0.5", 0), "10.0.0.1")

        assert outbox() == []
        assert uav_engine.metrics["route_replies_undeliverable"] == 1

    def test_worse_reply_keeps_better_route(self, uav_engine):
        deliver(uav_engine, RouteReply("GCS", uav_engine.address, 0), "10.0.0.1")
        deliver(uav_engine, RouteReply("GCS", uav_engine.address, 3), "10.0.0.3")

        assert uav_engine.routing_table.get("GCS").next_hop == "10.0.0.1"
        assert uav_engine.metrics["routes_discovered"] == 1

    def test_send_route_reply_without_route(self, uav_engine, outbox):
        assert uav_engine.send_route_reply("GCS", "10.0.0.5", 0) is False
        assert outbox() == []

    def test_send_route_reply_with_route(self, uav_engine, outbox):
        uav_engine.routing_table.update("10.0.0.5", "10.0.0.6", 1, now=0.0)

        assert uav_engine.send_route_reply("GCS", "10.0.0.5", 2) is True
        (address, reply), = outbox()
        assert address == "10.0.0.6"
        assert reply.hop_count == 2


class TestMeshData:
    """Tests for MESH_DATA delivery and forwarding."""

    def test_gcs_accepts_logical_destination(self, gcs_engine, outbox):
        deliver(gcs_engine, MeshData(3, "reading", "GCS", 8), "10.0.0.2")

        assert gcs_engine.metrics["data_packets_received"] == 1
        assert gcs_engine.metrics["mesh_data_received"] == 1
        assert outbox() == []

    def test_forward_decrements_ttl(self, uav_engine, outbox):
        uav_engine.routing_table.update("GCS", "10.0.0.1", 1, now=0.0)

        deliver(uav_engine, MeshData(3, "reading", "GCS", 8), "10.0.0.4")

        (address, forwarded), = outbox()
        assert address == "10.0.0.1"
        assert forwarded == MeshData(3, "reading", "GCS", 7)
        assert uav_engine.metrics["mesh_relayed"] == 1

    def test_ttl_one_is_dropped_and_counted(self, uav_engine, outbox):
        uav_engine.routing_table.update("GCS", "10.0.0.1", 1, now=0.0)

        deliver(uav_engine, MeshData(3, "reading", "GCS", 1), "10.0.0.4")

        assert outbox() == []
        assert uav_engine.metrics["mesh_delivery_failures"] == 1

    def test_no_route_is_dropped_and_counted(self, uav_engine, outbox):
        deliver(uav_engine, MeshData(3, "reading", "GCS", 5), "10.0.0.4")

        assert outbox() == []
        assert uav_engine.metrics["mesh_delivery_failures"] == 1


class TestLegacyMessages:
    """Tests for SENSOR_DATA and DATA_RELAY reception."""

    def test_sensor_data_counted_only_at_gcs(self, uav_engine, gcs_engine):
        deliver(uav_engine, SensorData(3, "reading"), "10.0.0.4")
        deliver(gcs_engine, SensorData(3, "reading"), "10.0.0.4")

        assert uav_engine.metrics["data_packets_received"] == 0
        assert gcs_engine.metrics["data_packets_received"] == 1

    def test_relay_reaching_gcs_is_delivered(self, gcs_engine):
        deliver(gcs_engine, DataRelay(3, "reading", "GCS", 2), "10.0.0.4")

        assert gcs_engine.metrics["data_packets_received"] == 1

    def test_relay_forwarded_to_gcs_neighbor(self, uav_engine, outbox):
        uav_engine.neighbors.upsert("10.0.0.1", Position(300.0, 0.0, 0.0), NodeRole.GCS, now=0.0)

        deliver(uav_engine, DataRelay(3, "reading", "GCS", 1), "10.0.0.4")

        (address, forwarded), = outbox()
        assert address == "10.0.0.1"
        assert forwarded.hop_count == 2

    def test_relay_at_hop_limit_is_still_forwarded(self, uav_engine, outbox):
        uav_engine.neighbors.upsert("10.0.0.1", Position(300.0, 0.0, 0.0), NodeRole.GCS, now=0.0)

        deliver(uav_engine, DataRelay(3, "reading", "GCS", 5), "10.0.0.4")

        (address, forwarded), = outbox()
        assert address == "10.0.0.1"
        assert forwarded.hop_count == 6
        assert uav_engine.metrics["relay_drops"] == 0

    def test_relay_over_hop_limit_is_dropped(self, uav_engine, outbox):
        uav_engine.neighbors.upsert("10.0.0.1", Position(300.0, 0.0, 0.0), NodeRole.GCS, now=0.0)

        deliver(uav_engine, DataRelay(3, "reading", "GCS", 6), "10.0.0.4")

        assert outbox() == []
        assert uav_engine.metrics["relay_drops"] == 1

    def test_relay_without_gcs_neighbor_is_dropped(self, uav_engine, outbox):
        deliver(uav_engine, DataRelay(3, "reading", "GCS", 1), "10.0.0.4")

        assert outbox() == []
        assert uav_engine.metrics["relay_drops"] == 1


class TestConnectivity:
    """Tests for the connectivity check."""

    def test_stale_neighbors_are_evicted(self, uav_engine, scheduler):
        uav_engine.neighbors.upsert("old", Position(100.0, 0.0, 0.0), NodeRole.GCS, now=0.0)
        scheduler.run_until(40.0)
        uav_engine.neighbors.upsert("fresh", Position(200.0, 0.0, 0.0), NodeRole.UAV, now=35.0)

        report = uav_engine.check_connectivity()

        assert report == {"neighbors": 1, "uav_neighbors": 1, "gcs_connected": False, "relay": "fresh"}
        assert uav_engine.metrics["neighbors_found"] == 1

    def test_rreq_cache_eviction_is_optional(self, make_engine, scheduler):
        engine = make_engine(rreq_cache_timeout=20.0)
        engine.rreq_cache.seen("10.0.0.5", 1, now=0.0)
        scheduler.run_until(30.0)

        engine.check_connectivity()

        assert len(engine.rreq_cache) == 0

    def test_rreq_cache_kept_by_default(self, uav_engine, scheduler):
        uav_engine.rreq_cache.seen("10.0.0.5", 1, now=0.0)
        scheduler.run_until(1000.0)

        uav_engine.check_connectivity()

        assert len(uav_engine.rreq_cache) == 1


class TestLifecycle:
    """Tests for timers and finalization."""

    def test_start_schedules_all_phases(self, uav_engine, mock_transport):
        uav_engine.start()

        mock_transport.bind.assert_called_once_with(5000, uav_engine.handle_datagram)
        assert set(uav_engine.pending_timers()) == {"discovery", "data", "connectivity", "force-finish"}
        assert uav_engine.state is NodeState.DISCOVERING

    def test_gcs_has_no_data_timer(self, gcs_engine):
        gcs_engine.start()

        assert "data" not in gcs_engine.pending_timers()

    def test_rounds_are_bounded(self, make_engine, scheduler):
        engine = make_engine(max_discovery_rounds=3, max_data_transmissions=2, max_connectivity_checks=1)
        engine.start()

        scheduler.run_until(250.0)

        assert engine.rounds == {"discovery": 3, "data": 2, "connectivity": 1}
        assert engine.pending_timers() == ["force-finish"]
        assert engine.state is NodeState.IDLE

    def test_start_time_delays_first_round(self, make_engine, scheduler):
        engine = make_engine(start_time=100.0)
        engine.start()

        scheduler.run_until(100.0)
        assert engine.rounds["discovery"] == 0

        scheduler.run_until(103.0)
        assert engine.rounds["discovery"] == 1

    def test_force_finish_cancels_everything(self, make_engine, scheduler):
        engine = make_engine(force_finish_after=20.0)
        engine.start()

        scheduler.run_until(21.0)

        assert engine.finalized is True
        assert engine.state is NodeState.FINALIZED
        assert engine.pending_timers() == []
        assert scheduler.pending() == 0

    @pytest.mark.parametrize("method", ["stop", "crash"])
    def test_stop_and_crash_finalize(self, uav_engine, scheduler, method):
        uav_engine.start()

        getattr(uav_engine, method)()

        assert uav_engine.finalized is True
        assert scheduler.pending() == 0

    def test_messages_ignored_after_finalize(self, uav_engine, outbox):
        uav_engine.finalize()

        deliver(uav_engine, discovery_from(100.0, NodeRole.GCS), "10.0.0.1")

        assert uav_engine.metrics["packets_received"] == 0
        assert len(uav_engine.neighbors) == 0
        assert outbox() == []

    def test_refused_send_is_not_counted(self, uav_engine, mock_transport):
        mock_transport.send_broadcast.return_value = False

        uav_engine.send_neighbor_discovery()

        assert uav_engine.metrics["packets_sent"] == 0

    def test_status_reports_tables(self, uav_engine):
        uav_engine.routing_table.update("GCS", "10.0.0.3", 2, now=0.0)

        status = uav_engine.get_status()

        assert status["state"] == "idle"
        assert status["routes"]["GCS"]["next_hop"] == "10.0.0.3"
        assert status["metrics"]["packets_sent"] == 0
