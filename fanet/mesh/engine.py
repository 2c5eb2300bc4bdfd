# Copyright 2024 FANET Mesh Contributors
# SPDX-License-Identifier: Apache-2.0
"""
FANET protocol engine.

One engine instance runs per simulated node (UAV or GCS). It owns the
node's neighbor table, routing table and route request cache, reacts to
timers fired by the scheduler and to datagrams delivered by the
transport, and decides how sensor data reaches the GCS.

Timer sequences (overlapping, each bounded by its round limit):
    discovery      broadcast NEIGHBOR_DISCOVERY every 10s
    data           UAV only, send one sensor reading every 15s
    connectivity   evict stale neighbors and report every 30s
    force-finish   fires once and cancels everything else

Delivery strategy for a sensor reading, strongest first:
    1. Direct SENSOR_DATA to a GCS neighbor in range
    2. MESH_DATA to the next hop of a valid route toward the GCS
    3. DATA_RELAY through the best UAV neighbor (only if enabled)
    4. ROUTE_REQUEST flood plus a broadcast copy of the reading
    5. Broadcast copy only, counted as undeliverable
"""

import logging
import random
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Set, Tuple, Any

from .interfaces import DiagnosticsSink, PositionProvider, Scheduler, TimerHandle, Transport
from .messages import (
    DataRelay,
    MeshData,
    MessageDecodeError,
    MessageType,
    NeighborDiscovery,
    NeighborResponse,
    RouteReply,
    RouteRequest,
    SensorData,
    decode_message,
    encode_message,
)
from .neighbors import NeighborTable, NodeRole
from .routing import RouteRequestCache, RoutingTable

logger = logging.getLogger(__name__)


# Protocol bounds
MAX_DISCOVERY_ROUNDS = 10
MAX_DATA_TRANSMISSIONS = 20
MAX_CONNECTIVITY_CHECKS = 10
MAX_HOP_COUNT = 5
MAX_TTL = 10
ROUTE_TIMEOUT = 60.0

DISCOVERY_INTERVAL = 10.0
DATA_INTERVAL = 15.0
CONNECTIVITY_INTERVAL = 30.0
FORCE_FINISH_AFTER = 300.0

LOOPBACK_ADDRESSES = ("127.0.0.1", "localhost")

# Logical destination answered by whichever ground station hears the request
GCS_DESTINATION = "GCS"

TIMER_DISCOVERY = "discovery"
TIMER_DATA = "data"
TIMER_CONNECTIVITY = "connectivity"
TIMER_FORCE_FINISH = "force-finish"


@dataclass
class ProtocolSettings:
    """Per-node protocol configuration."""
    local_port: int = 5000
    dest_port: int = 5000
    start_time: float = 0.0
    neighbor_timeout: float = 30.0
    max_transmission_range: float = 1000.0
    max_discovery_rounds: int = MAX_DISCOVERY_ROUNDS
    max_data_transmissions: int = MAX_DATA_TRANSMISSIONS
    max_connectivity_checks: int = MAX_CONNECTIVITY_CHECKS
    max_hop_count: int = MAX_HOP_COUNT
    max_ttl: int = MAX_TTL
    route_timeout: float = ROUTE_TIMEOUT
    discovery_interval: float = DISCOVERY_INTERVAL
    data_interval: float = DATA_INTERVAL
    connectivity_interval: float = CONNECTIVITY_INTERVAL
    discovery_start_window: Tuple[float, float] = (1.0, 3.0)
    data_start_window: Tuple[float, float] = (5.0, 8.0)
    connectivity_start_window: Tuple[float, float] = (10.0, 15.0)
    force_finish_after: float = FORCE_FINISH_AFTER
    rreq_cache_timeout: Optional[float] = None
    use_legacy_relay: bool = False


class NodeState(Enum):
    """Lifecycle phases of a node."""
    IDLE = "idle"
    DISCOVERING = "discovering"
    TRANSMITTING = "transmitting"
    CHECKING_CONNECTIVITY = "checking_connectivity"
    FINALIZED = "finalized"


class DeliveryStrategy(Enum):
    """How a sensor reading left this node."""
    DIRECT = "direct"
    MESH = "mesh"
    RELAY = "relay"
    ROUTE_DISCOVERY = "route_discovery"
    BROADCAST = "broadcast"


@dataclass
class Outbound:
    """A message to transmit; `address` None means broadcast."""
    message: Any
    address: Optional[str] = None

    @property
    def is_broadcast(self) -> bool:
        return self.address is None


_PHASE_TIMERS = (
    (TIMER_DISCOVERY, NodeState.DISCOVERING),
    (TIMER_DATA, NodeState.TRANSMITTING),
    (TIMER_CONNECTIVITY, NodeState.CHECKING_CONNECTIVITY),
)


class ProtocolEngine:
    """
    Per-node FANET protocol state machine.

    Handlers for inbound messages update this node's tables and return
    the messages to send; the engine transmits them. All handlers run to
    completion on the caller's thread.

    Attributes:
        address: This node's network address
        node_index: Numeric node index carried in messages
        is_gcs: Whether this node is a ground control station
        neighbors: Directly heard peers
        routing_table: Mesh routes by destination
        rreq_cache: Route requests already processed
        metrics: Protocol counters
    """

    def __init__(
        self,
        address: str,
        node_index: int,
        is_gcs: bool,
        position_provider: PositionProvider,
        transport: Transport,
        scheduler: Scheduler,
        settings: Optional[ProtocolSettings] = None,
        diagnostics: Optional[DiagnosticsSink] = None,
        rng: Optional[random.Random] = None,
    ):
        self.address = address
        self.node_index = node_index
        self.is_gcs = is_gcs
        self.position_provider = position_provider
        self.transport = transport
        self.scheduler = scheduler
        self.settings = settings or ProtocolSettings()
        self.diagnostics = diagnostics
        self.rng = rng or random.Random()

        self.neighbors = NeighborTable(position_provider)
        self.routing_table = RoutingTable(self.settings.route_timeout)
        self.rreq_cache = RouteRequestCache()
        self.known_gcs: List[str] = []
        self.sequence_number = 0

        self.rounds = {TIMER_DISCOVERY: 0, TIMER_DATA: 0, TIMER_CONNECTIVITY: 0}
        self._timers: Dict[str, TimerHandle] = {}
        self.started = False
        self.finalized = False

        self.metrics = {
            "packets_sent": 0,
            "packets_received": 0,
            "data_packets_sent": 0,
            "data_packets_received": 0,
            "neighbors_found": 0,
            "dropped_self": 0,
            "dropped_out_of_range": 0,
            "malformed_messages": 0,
            "route_requests_sent": 0,
            "route_requests_forwarded": 0,
            "route_requests_duplicate": 0,
            "route_requests_expired": 0,
            "route_replies_sent": 0,
            "route_replies_undeliverable": 0,
            "routes_discovered": 0,
            "mesh_data_sent": 0,
            "mesh_data_received": 0,
            "mesh_relayed": 0,
            "mesh_delivery_failures": 0,
            "relays_sent": 0,
            "relay_drops": 0,
            "broadcast_fallbacks": 0,
            "undeliverable_data": 0,
        }

        self._handlers: Dict[MessageType, Callable[[Any, str], List[Outbound]]] = {
            MessageType.NEIGHBOR_DISCOVERY: self._handle_neighbor_discovery,
            MessageType.NEIGHBOR_RESPONSE: self._handle_neighbor_response,
            MessageType.SENSOR_DATA: self._handle_sensor_data,
            MessageType.DATA_RELAY: self._handle_data_relay,
            MessageType.ROUTE_REQUEST: self._handle_route_request,
            MessageType.ROUTE_REPLY: self._handle_route_reply,
            MessageType.MESH_DATA: self._handle_mesh_data,
        }

        logger.info(
            f"FANET init: {self.role.value} {node_index} address={address} "
            f"maxRange={self.settings.max_transmission_range}m port={self.settings.local_port}"
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @property
    def role(self) -> NodeRole:
        return NodeRole.GCS if self.is_gcs else NodeRole.UAV

    @property
    def label(self) -> str:
        return f"{self.role.value}{self.node_index}"

    def now(self) -> float:
        return self.scheduler.now()

    def start(self) -> None:
        """Bind the transport and schedule the first round of every timer."""
        if self.started:
            logger.warning(f"{self.label} already started")
            return
        self.started = True

        self.transport.bind(self.settings.local_port, self.handle_datagram)

        s = self.settings
        offset = max(0.0, s.start_time - self.now())
        self._schedule(TIMER_DISCOVERY, offset + self.rng.uniform(*s.discovery_start_window))
        if not self.is_gcs:
            self._schedule(TIMER_DATA, offset + self.rng.uniform(*s.data_start_window))
        self._schedule(TIMER_CONNECTIVITY, offset + self.rng.uniform(*s.connectivity_start_window))
        self._schedule(TIMER_FORCE_FINISH, offset + s.force_finish_after)

        logger.info(f"FANET ready: {self.label} at {self.position_provider.current_position()}")

    def stop(self) -> None:
        """Graceful stop; takes the forced finalization path."""
        self.finalize(reason="stop")

    def crash(self) -> None:
        """Abrupt stop; takes the forced finalization path."""
        self.finalize(reason="crash")

    def finalize(self, reason: str = "finished") -> None:
        """Cancel every outstanding timer and stop reacting to messages."""
        if self.finalized:
            return

        for handle in list(self._timers.values()):
            self.scheduler.cancel(handle)
        self._timers.clear()
        self.finalized = True

        m = self.metrics
        logger.info(
            f"FANET stats - {self.label} ({reason}): sent={m['packets_sent']} "
            f"recv={m['packets_received']} data_sent={m['data_packets_sent']} "
            f"data_recv={m['data_packets_received']} neighbors={len(self.neighbors)}"
        )

    @property
    def state(self) -> NodeState:
        """First running phase in lifecycle order, FINALIZED, or IDLE."""
        if self.finalized:
            return NodeState.FINALIZED
        phases = self.active_phases()
        for _, phase in _PHASE_TIMERS:
            if phase in phases:
                return phase
        return NodeState.IDLE

    def active_phases(self) -> Set[NodeState]:
        """Phases whose timer sequence is still scheduled."""
        return {
            phase for name, phase in _PHASE_TIMERS
            if name in self._timers and self._timers[name].pending
        }

    def pending_timers(self) -> List[str]:
        return [name for name, h in self._timers.items() if h.pending]

    # =========================================================================
    # Timers
    # =========================================================================

    def _schedule(self, name: str, delay: float) -> None:
        handle = self.scheduler.schedule_after(
            delay, lambda: self._on_timer(name), name=f"{self.address}:{name}"
        )
        self._timers[name] = handle

    def _on_timer(self, name: str) -> None:
        self._timers.pop(name, None)
        if self.finalized:
            return

        s = self.settings
        if name == TIMER_FORCE_FINISH:
            logger.info(f"{self.label}: forced finalization at t={self.now():.2f}")
            self.finalize(reason="forced")
        elif name == TIMER_DISCOVERY:
            self.send_neighbor_discovery()
            self._next_round(name, s.max_discovery_rounds, s.discovery_interval)
        elif name == TIMER_DATA:
            self.send_sensor_data()
            self._next_round(name, s.max_data_transmissions, s.data_interval)
        elif name == TIMER_CONNECTIVITY:
            self.check_connectivity()
            self._next_round(name, s.max_connectivity_checks, s.connectivity_interval)
        else:
            logger.warning(f"Unknown timer: {name}")

    def _next_round(self, name: str, limit: int, interval: float) -> None:
        self.rounds[name] += 1
        if self.rounds[name] < limit:
            self._schedule(name, interval)
        else:
            logger.debug(f"{self.label}: {name} finished after {self.rounds[name]} rounds")

    # =========================================================================
    # Transmission
    # =========================================================================

    def _count(self, name: str, amount: int = 1) -> None:
        self.metrics[name] += amount
        if self.diagnostics is not None:
            self.diagnostics.record(self.address, name, self.metrics[name])

    def _gauge(self, name: str, value: int) -> None:
        self.metrics[name] = value
        if self.diagnostics is not None:
            self.diagnostics.record(self.address, name, value)

    def transmit(self, outbound: List[Outbound]) -> None:
        """Encode and hand messages to the transport."""
        port = self.settings.dest_port
        for out in outbound:
            data = encode_message(out.message)
            if out.is_broadcast:
                sent = self.transport.send_broadcast(data, port)
            else:
                sent = self.transport.send_unicast(data, out.address, port)
            if sent is False:
                logger.debug(f"{self.label}: transport refused {out.message.MSG_TYPE.name}")
                continue
            self._count("packets_sent")

    # =========================================================================
    # Inbound
    # =========================================================================

    def handle_datagram(self, data: bytes, sender_address: str) -> None:
        """Transport callback: admit, decode and dispatch one datagram."""
        if self.finalized:
            return

        self._count("packets_received")

        if sender_address in LOOPBACK_ADDRESSES or sender_address == self.address:
            logger.debug(f"DROPPED: ignoring own/loopback message from {sender_address}")
            self._count("dropped_self")
            return

        try:
            message = decode_message(data)
        except MessageDecodeError as e:
            logger.debug(f"Invalid packet format from {sender_address}: {e}")
            self._count("malformed_messages")
            return

        if message.carries_position:
            distance = self._distance_to(message.position)
            if not distance <= self.settings.max_transmission_range:
                logger.debug(
                    f"DROPPED: message from {sender_address} out of range "
                    f"({int(distance)}m > {int(self.settings.max_transmission_range)}m)"
                )
                self._count("dropped_out_of_range")
                return

        logger.debug(f"Message received: {message.MSG_TYPE.name} from {sender_address}")
        outbound = self.dispatch(message, sender_address)
        self.transmit(outbound)

    def dispatch(self, message, sender_address: str) -> List[Outbound]:
        """Run the handler for `message` and return what it wants sent."""
        handler = self._handlers.get(message.MSG_TYPE)
        if handler is None:
            logger.warning(f"Unknown message type: {message.MSG_TYPE}")
            return []
        return handler(message, sender_address)

    def _distance_to(self, position) -> float:
        return self.position_provider.current_position().distance_to(position)

    def _is_destination(self, destination: str) -> bool:
        return destination == self.address or (self.is_gcs and destination == GCS_DESTINATION)

    # =========================================================================
    # Neighbor discovery
    # =========================================================================

    def send_neighbor_discovery(self) -> None:
        """Broadcast this node's position and role."""
        position = self.position_provider.current_position()
        logger.debug(f"Starting neighbor discovery: {self.label} @ {position}")
        message = NeighborDiscovery(
            node_index=self.node_index,
            timestamp=self.now(),
            position=position,
            role=self.role,
        )
        self.transmit([Outbound(message)])

    def _admit_neighbor(self, message, sender_address: str, kind: str) -> bool:
        distance = self._distance_to(message.position)
        max_range = self.settings.max_transmission_range
        if not distance <= max_range:
            logger.debug(
                f"{kind} ignored: {sender_address} out of range ({int(distance)}m > {int(max_range)}m)"
            )
            return False

        self.neighbors.upsert(sender_address, message.position, message.role, self.now())
        if message.role is NodeRole.GCS and sender_address not in self.known_gcs:
            self.known_gcs.append(sender_address)
        return True

    def _handle_neighbor_discovery(self, message: NeighborDiscovery, sender_address: str) -> List[Outbound]:
        if not self._admit_neighbor(message, sender_address, "Discovery"):
            return []

        response = NeighborResponse(
            node_index=self.node_index,
            timestamp=self.now(),
            position=self.position_provider.current_position(),
            role=self.role,
        )
        logger.debug(f"Discovery response: {self.label} -> {message.role.value} {sender_address}")
        return [Outbound(response, sender_address)]

    def _handle_neighbor_response(self, message: NeighborResponse, sender_address: str) -> List[Outbound]:
        if self._admit_neighbor(message, sender_address, "Response"):
            logger.debug(f"Response processed: {message.role.value} {sender_address} added as neighbor")
        return []

    # =========================================================================
    # Sensor data
    # =========================================================================

    def make_sensor_payload(self) -> str:
        p = self.position_provider.current_position()
        return "UAV_%d_SENSOR: Pos(%.1f,%.1f,%.1f) Temp:%.1f Bat:%.0f%% T:%.2f" % (
            self.node_index, p.x, p.y, p.z,
            self.rng.uniform(20, 35), self.rng.uniform(60, 100), self.now(),
        )

    def find_gcs_route(self) -> Optional[Tuple[str, str]]:
        """
        Find a mesh route toward a ground station.

        Only routes to the logical GCS destination or to addresses known
        to be ground stations count.

        Returns:
            (destination, next_hop) or None
        """
        now = self.now()
        for destination in [GCS_DESTINATION] + self.known_gcs:
            next_hop = self.routing_table.lookup(destination, now)
            if next_hop is not None:
                return destination, next_hop
        return None

    def plan_sensor_data(self, payload: str) -> Tuple[DeliveryStrategy, List[Outbound]]:
        """
        Choose the delivery strategy for one sensor reading.

        Sends nothing and records no route request. For ROUTE_DISCOVERY the
        returned list holds just the broadcast copy; send_sensor_data adds
        the request.
        """
        s = self.settings

        gcs = self.neighbors.find_gcs()
        if gcs is not None and gcs.distance <= s.max_transmission_range:
            return DeliveryStrategy.DIRECT, [Outbound(SensorData(self.node_index, payload), gcs.address)]

        route = self.find_gcs_route()
        if route is not None:
            destination, next_hop = route
            message = MeshData(self.node_index, payload, destination, s.max_ttl)
            return DeliveryStrategy.MESH, [Outbound(message, next_hop)]

        if s.use_legacy_relay:
            relay = self.neighbors.best_relay(s.max_transmission_range, self.now())
            if relay is not None:
                message = DataRelay(self.node_index, payload, GCS_DESTINATION, 1)
                return DeliveryStrategy.RELAY, [Outbound(message, relay.address)]

        broadcast = Outbound(SensorData(self.node_index, payload))
        if len(self.neighbors) > 0 or self.known_gcs:
            return DeliveryStrategy.ROUTE_DISCOVERY, [broadcast]

        return DeliveryStrategy.BROADCAST, [broadcast]

    def send_sensor_data(self) -> Optional[DeliveryStrategy]:
        """Generate one sensor reading and send it toward the GCS (UAV only)."""
        if self.is_gcs:
            return None

        strategy, outbound = self.plan_sensor_data(self.make_sensor_payload())
        if strategy is DeliveryStrategy.ROUTE_DISCOVERY:
            outbound.insert(0, Outbound(self._new_route_request()))
        self.transmit(outbound)

        if strategy is DeliveryStrategy.DIRECT:
            self._count("data_packets_sent")
            logger.info(f"Sensor data sent: {self.label} -> GCS (direct)")
        elif strategy is DeliveryStrategy.MESH:
            self._count("data_packets_sent")
            self._count("mesh_data_sent")
            logger.info(f"Sensor data sent: {self.label} -> {outbound[0].address} -> GCS (mesh)")
        elif strategy is DeliveryStrategy.RELAY:
            self._count("data_packets_sent")
            self._count("relays_sent")
            logger.info(f"Sensor data relayed: {self.label} -> {outbound[0].address} -> GCS (no direct path)")
        elif strategy is DeliveryStrategy.ROUTE_DISCOVERY:
            self._count("route_requests_sent")
            self._count("broadcast_fallbacks")
            logger.info(f"No route to GCS from {self.label}: route request sent, data broadcast")
        else:
            self._count("undeliverable_data")
            logger.warning(f"WARNING: no path to GCS for sensor data ({self.label}), broadcasting")

        return strategy

    def _handle_sensor_data(self, message: SensorData, sender_address: str) -> List[Outbound]:
        if not self.is_gcs:
            return []
        logger.info(f"Sensor data received: UAV{message.source_node_id} -> GCS")
        self._count("data_packets_received")
        return []

    # =========================================================================
    # Legacy single-hop relay
    # =========================================================================

    def _handle_data_relay(self, message: DataRelay, sender_address: str) -> List[Outbound]:
        if self.is_gcs:
            logger.info(f"Data relay reached GCS (hop {message.hop_count})")
            self._count("data_packets_received")
            return []

        if message.hop_count > self.settings.max_hop_count:
            logger.warning(f"WARNING: max hop count exceeded ({message.hop_count}), dropping packet")
            self._count("relay_drops")
            return []

        gcs = self.neighbors.find_gcs()
        if gcs is None:
            logger.warning(f"WARNING: relay failed at {self.label} - no path to GCS")
            self._count("relay_drops")
            return []

        forwarded = DataRelay(
            source_node_id=message.source_node_id,
            data=message.data,
            final_destination=message.final_destination,
            hop_count=message.hop_count + 1,
        )
        self._count("relays_sent")
        logger.debug(f"Data relayed to {gcs.address} (hop {forwarded.hop_count})")
        return [Outbound(forwarded, gcs.address)]

    # =========================================================================
    # Route discovery
    # =========================================================================

    def _new_route_request(self, destination: str = GCS_DESTINATION) -> RouteRequest:
        self.sequence_number += 1
        # Record our own request so echoes of it are suppressed
        self.rreq_cache.seen(self.address, self.sequence_number, self.now())
        return RouteRequest(
            destination=destination,
            originator=self.address,
            sequence_number=self.sequence_number,
            hop_count=0,
            ttl=self.settings.max_ttl,
        )

    def send_route_request(self, destination: str = GCS_DESTINATION) -> RouteRequest:
        """Flood a new route request for `destination`."""
        request = self._new_route_request(destination)
        self.transmit([Outbound(request)])
        self._count("route_requests_sent")
        logger.info(
            f"Route discovery initiated: {self.label} destination={destination} "
            f"seq={request.sequence_number}"
        )
        return request

    def _route_reply(self, destination: str, originator: str, hop_count: int) -> List[Outbound]:
        next_hop = self.routing_table.lookup(originator, self.now())
        if next_hop is None:
            logger.debug(f"{self.label}: no route back to {originator}, reply for {destination} dropped")
            self._count("route_replies_undeliverable")
            return []

        self._count("route_replies_sent")
        return [Outbound(RouteReply(destination, originator, hop_count), next_hop)]

    def send_route_reply(self, destination: str, originator: str, hop_count: int) -> bool:
        """Send a ROUTE_REPLY one hop toward `originator`; False if no route back."""
        outbound = self._route_reply(destination, originator, hop_count)
        self.transmit(outbound)
        return bool(outbound)

    def _handle_route_request(self, message: RouteRequest, sender_address: str) -> List[Outbound]:
        now = self.now()

        if message.ttl <= 0:
            logger.debug(f"RREQ from {message.originator} dropped: ttl exhausted")
            self._count("route_requests_expired")
            return []

        if self.rreq_cache.seen(message.originator, message.sequence_number, now):
            self._count("route_requests_duplicate")
            return []

        # Reverse path toward the originator
        self.routing_table.update(message.originator, sender_address, message.hop_count + 1, now)

        if self._is_destination(message.destination):
            logger.info(f"{self.label}: route request from {message.originator} reached destination")
            return self._route_reply(message.destination, message.originator, 0)

        known = self.routing_table.lookup_entry(message.destination, now)
        if known is not None:
            logger.debug(f"{self.label}: answering RREQ for {message.destination} from route table")
            return self._route_reply(message.destination, message.originator, known.hop_count)

        if message.ttl > 1:
            forwarded = RouteRequest(
                destination=message.destination,
                originator=message.originator,
                sequence_number=message.sequence_number,
                hop_count=message.hop_count + 1,
                ttl=message.ttl - 1,
            )
            self._count("route_requests_forwarded")
            return [Outbound(forwarded)]

        logger.debug(f"RREQ {message.originator}#{message.sequence_number} dies at {self.label}")
        self._count("route_requests_expired")
        return []

    def _handle_route_reply(self, message: RouteReply, sender_address: str) -> List[Outbound]:
        now = self.now()
        if self.routing_table.update(message.destination, sender_address, message.hop_count + 1, now):
            self._count("routes_discovered")
            logger.info(
                f"Route discovered: {self.label} -> {message.destination} via {sender_address} "
                f"({message.hop_count + 1} hops)"
            )

        if message.originator == self.address:
            return []

        if message.hop_count + 1 >= self.settings.max_ttl:
            logger.debug(f"RREP for {message.destination} exceeded {self.settings.max_ttl} hops, dropping")
            return []

        return self._route_reply(message.destination, message.originator, message.hop_count + 1)

    # =========================================================================
    # Mesh data
    # =========================================================================

    def _handle_mesh_data(self, message: MeshData, sender_address: str) -> List[Outbound]:
        if self._is_destination(message.destination):
            if self.is_gcs:
                logger.info(f"Mesh data delivered: UAV{message.source_node_id} -> GCS")
                self._count("data_packets_received")
            else:
                logger.info(f"Mesh data received at {self.label} from UAV{message.source_node_id}")
            self._count("mesh_data_received")
            return []

        next_hop = self.routing_table.lookup(message.destination, self.now())
        if next_hop is None or message.ttl <= 1:
            reason = "no route" if next_hop is None else "ttl exhausted"
            logger.warning(f"Mesh data for {message.destination} dropped at {self.label}: {reason}")
            self._count("mesh_delivery_failures")
            return []

        forwarded = MeshData(
            source_node_id=message.source_node_id,
            data=message.data,
            destination=message.destination,
            ttl=message.ttl - 1,
        )
        self._count("mesh_relayed")
        logger.debug(f"Mesh data forwarded: {sender_address} -> {self.label} -> {next_hop}")
        return [Outbound(forwarded, next_hop)]

    # =========================================================================
    # Connectivity
    # =========================================================================

    def check_connectivity(self) -> Dict[str, Any]:
        """Evict stale neighbors and report what is left."""
        now = self.now()
        self.neighbors.evict_expired(now, self.settings.neighbor_timeout)
        if self.settings.rreq_cache_timeout is not None:
            self.rreq_cache.evict_expired(now, self.settings.rreq_cache_timeout)

        total, uavs, gcs_connected = self.neighbors.counts()
        logger.info(
            f"Connectivity: {self.label} has {total} neighbors ({uavs} UAVs, "
            f"{'GCS connected' if gcs_connected else 'no GCS'})"
        )

        relay = None
        if not self.is_gcs and not gcs_connected and uavs > 0:
            relay = self.neighbors.best_relay(self.settings.max_transmission_range, now)
            if relay is not None:
                logger.info(f"  Relay available: {relay.address}")

        self._gauge("neighbors_found", total)
        return {
            "neighbors": total,
            "uav_neighbors": uavs,
            "gcs_connected": gcs_connected,
            "relay": relay.address if relay else None,
        }

    def get_status(self) -> Dict[str, Any]:
        """Current node state for debugging."""
        now = self.now()
        return {
            "address": self.address,
            "node_index": self.node_index,
            "role": self.role.value,
            "state": self.state.value,
            "neighbors": [e.address for e in self.neighbors],
            "routes": self.routing_table.snapshot(now),
            "rreq_cache": len(self.rreq_cache),
            "metrics": self.metrics.copy(),
        }
