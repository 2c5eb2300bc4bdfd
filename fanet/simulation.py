# Copyright 2024 FANET Mesh Contributors
# SPDX-License-Identifier: Apache-2.0
"""
Discrete-event simulation harness for the FANET protocol engine.

Provides in-memory implementations of the engine's collaborators:
- EventScheduler: simulated clock and timer queue
- SimulatedNetwork / NodeTransport: UDP-like datagram medium
- StatsRecorder: diagnostics sink collecting per-node counters

and FanetSimulation, which builds a whole scenario from a ScenarioConfig.
"""

import heapq
import itertools
import logging
import random
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional, Tuple

from .config import NodeConfig, ScenarioConfig
from .mesh.engine import GCS_DESTINATION, ProtocolEngine
from .mesh.interfaces import PositionProvider, TimerHandle
from .mesh.neighbors import Position
from .mobility import ArbitraryMobility, Bounds, StaticMobility

logger = logging.getLogger(__name__)

BROADCAST_ADDRESS = "255.255.255.255"


class EventScheduler:
    """
    Discrete-event scheduler driving simulated time.

    Events run in (time, insertion order); a handler runs to completion
    before the next event is popped.
    """

    def __init__(self):
        self._queue: List[Tuple[float, int, TimerHandle]] = []
        self._counter = itertools.count()
        self._now = 0.0
        self.running = False
        self.statistics = {
            "events_processed": 0,
            "events_cancelled": 0,
            "handler_errors": 0,
        }

    def now(self) -> float:
        return self._now

    def schedule_after(self, delay: float, callback: Callable[[], None], name: str = "") -> TimerHandle:
        if delay < 0:
            raise ValueError(f"Cannot schedule in the past (delay={delay})")
        handle = TimerHandle(self, self._now + delay, callback, name)
        heapq.heappush(self._queue, (handle.when, next(self._counter), handle))
        return handle

    def cancel(self, handle: TimerHandle) -> None:
        if handle.owner is not self:
            raise ValueError(f"{handle!r} belongs to another scheduler")
        if handle.pending:
            handle.cancelled = True
            self.statistics["events_cancelled"] += 1

    def pending(self) -> int:
        return sum(1 for _, _, h in self._queue if h.pending)

    def next_event_time(self) -> Optional[float]:
        for when, _, handle in sorted(self._queue):
            if handle.pending:
                return when
        return None

    def _discard_cancelled(self) -> None:
        while self._queue and not self._queue[0][2].pending:
            heapq.heappop(self._queue)

    def step(self) -> bool:
        """Run the next pending event. Returns False when the queue is empty."""
        while self._queue:
            when, _, handle = heapq.heappop(self._queue)
            if not handle.pending:
                continue

            self._now = when
            handle.fired = True
            try:
                handle.callback()
            except Exception as e:
                self.statistics["handler_errors"] += 1
                logger.error(f"Error in event handler {handle.name or '?'}: {e}", exc_info=True)
            self.statistics["events_processed"] += 1
            return True
        return False

    def run_until(self, end_time: float, should_stop: Optional[Callable[[], bool]] = None) -> int:
        """
        Process events up to and including `end_time`.

        Returns:
            Number of events processed
        """
        self.running = True
        processed = 0

        while self.running:
            if should_stop is not None and should_stop():
                logger.info(f"Simulation stop requested at t={self._now:.2f}")
                break
            self._discard_cancelled()
            if not self._queue or self._queue[0][0] > end_time:
                break
            if self.step():
                processed += 1

        if self.running:
            self._now = max(self._now, end_time)
        self.running = False
        return processed

    def stop(self) -> None:
        self.running = False


class NodeTransport:
    """One node's datagram endpoint on a SimulatedNetwork."""

    def __init__(self, network: "SimulatedNetwork", address: str, position_provider: PositionProvider):
        self.network = network
        self.address = address
        self.position_provider = position_provider
        self._bindings: Dict[int, Callable[[bytes, str], None]] = {}

    def bind(self, port: int, callback: Callable[[bytes, str], None]) -> None:
        if port in self._bindings:
            raise ValueError(f"Port {port} already bound on {self.address}")
        self._bindings[port] = callback
        logger.debug(f"Socket configured on {self.address}:{port} with broadcast enabled")

    def callback_for(self, port: int) -> Optional[Callable[[bytes, str], None]]:
        return self._bindings.get(port)

    def send_unicast(self, data: bytes, address: str, port: int) -> bool:
        return self.network.send(self.address, data, address, port)

    def send_broadcast(self, data: bytes, port: int) -> bool:
        return self.network.send(self.address, data, BROADCAST_ADDRESS, port)


class SimulatedNetwork:
    """
    In-memory datagram medium shared by every simulated node.

    Datagrams arrive after `propagation_delay` seconds. When `radio_range`
    is set, receivers farther than that from the sender (at send time)
    never get the datagram. Sending to an unknown address or an unbound
    port succeeds from the sender's point of view and is lost silently.
    """

    def __init__(self, scheduler: EventScheduler, propagation_delay: float = 0.001,
                 radio_range: Optional[float] = None):
        self.scheduler = scheduler
        self.propagation_delay = propagation_delay
        self.radio_range = radio_range
        self.nodes: Dict[str, NodeTransport] = {}
        self.statistics = {"datagrams_sent": 0, "datagrams_delivered": 0, "datagrams_lost": 0}

    def attach(self, address: str, position_provider: PositionProvider) -> NodeTransport:
        if address in self.nodes:
            raise ValueError(f"Address already attached: {address}")
        transport = NodeTransport(self, address, position_provider)
        self.nodes[address] = transport
        return transport

    def _in_radio_range(self, sender: NodeTransport, receiver: NodeTransport) -> bool:
        if self.radio_range is None:
            return True
        a = sender.position_provider.current_position()
        b = receiver.position_provider.current_position()
        return a.distance_to(b) <= self.radio_range

    def send(self, sender_address: str, data: bytes, destination: str, port: int) -> bool:
        sender = self.nodes[sender_address]
        self.statistics["datagrams_sent"] += 1

        if destination == BROADCAST_ADDRESS:
            receivers = [t for a, t in self.nodes.items() if a != sender_address]
        elif destination in self.nodes:
            receivers = [self.nodes[destination]]
        else:
            receivers = []

        delivered = False
        for receiver in receivers:
            callback = receiver.callback_for(port)
            if callback is None or not self._in_radio_range(sender, receiver):
                continue
            self.scheduler.schedule_after(
                self.propagation_delay,
                lambda cb=callback, d=data: self._deliver(cb, d, sender_address),
                name=f"deliver:{sender_address}->{receiver.address}",
            )
            delivered = True

        if not delivered:
            self.statistics["datagrams_lost"] += 1
        return True

    def _deliver(self, callback: Callable[[bytes, str], None], data: bytes, sender_address: str) -> None:
        self.statistics["datagrams_delivered"] += 1
        callback(data, sender_address)


class StatsRecorder:
    """Diagnostics sink keeping every recorded value per node."""

    def __init__(self, clock: Callable[[], float]):
        self.clock = clock
        self.series: Dict[str, Dict[str, List[Tuple[float, float]]]] = defaultdict(lambda: defaultdict(list))
        self.last: Dict[str, Dict[str, float]] = defaultdict(dict)

    def record(self, node: str, name: str, value: float) -> None:
        self.series[node][name].append((self.clock(), value))
        self.last[node][name] = value

    def value(self, node: str, name: str, default: float = 0) -> float:
        return self.last.get(node, {}).get(name, default)

    def total(self, name: str) -> float:
        return sum(values.get(name, 0) for values in self.last.values())


class FanetSimulation:
    """
    A complete FANET scenario: one engine, mobility model and transport
    per configured node on a shared simulated network.
    """

    def __init__(self, config: ScenarioConfig):
        self.config = config
        self.rng = random.Random(config.seed)
        self.scheduler = EventScheduler()
        self.network = SimulatedNetwork(
            self.scheduler,
            propagation_delay=config.propagation_delay,
            radio_range=config.radio_range,
        )
        self.stats = StatsRecorder(self.scheduler.now)
        self.engines: Dict[str, ProtocolEngine] = {}
        self.mobility: Dict[str, Any] = {}
        self.started = False
        self.stopped = False
        self._build()

    def _make_mobility(self, node: NodeConfig):
        m = node.mobility
        initial = Position(m.x, m.y, m.z)
        if m.model == "arbitrary":
            bounds = Bounds(
                min_x=m.area_min_x, max_x=m.area_max_x,
                min_y=m.area_min_y, max_y=m.area_max_y,
                min_z=m.min_altitude, max_z=m.max_altitude,
            )
            return ArbitraryMobility(
                initial, m.min_speed, m.max_speed, bounds,
                rng=random.Random(self.rng.random()),
            )
        return StaticMobility(initial)

    def _build(self) -> None:
        for index, node in enumerate(self.config.nodes):
            mobility = self._make_mobility(node)
            transport = self.network.attach(node.address, mobility)
            engine = ProtocolEngine(
                address=node.address,
                node_index=index,
                is_gcs=node.is_gcs,
                position_provider=mobility,
                transport=transport,
                scheduler=self.scheduler,
                settings=self.config.protocol_settings(node),
                diagnostics=self.stats,
                rng=random.Random(self.rng.random()),
            )
            self.engines[node.address] = engine
            self.mobility[node.address] = mobility

        logger.info(f"Scenario built: {len(self.engines)} nodes ({len(self.gcs_addresses())} GCS)")

    def gcs_addresses(self) -> List[str]:
        return [a for a, e in self.engines.items() if e.is_gcs]

    def _schedule_move(self, address: str, interval: float) -> None:
        mobility = self.mobility[address]

        def tick():
            mobility.move(self.scheduler.now())
            self.scheduler.schedule_after(interval, tick, name=f"{address}:move")

        self.scheduler.schedule_after(interval, tick, name=f"{address}:move")

    def start(self) -> None:
        if self.started:
            return
        self.started = True
        for node in self.config.nodes:
            self.engines[node.address].start()
            if node.mobility.model == "arbitrary":
                self._schedule_move(node.address, node.mobility.update_interval)

    def run(self, duration: Optional[float] = None,
            should_stop: Optional[Callable[[], bool]] = None) -> Dict[str, Dict[str, Any]]:
        """
        Run the scenario and finalize every node.

        Returns:
            Per-node summary keyed by address
        """
        self.start()
        end_time = duration if duration is not None else self.config.duration
        processed = self.scheduler.run_until(end_time, should_stop=should_stop)
        logger.info(f"Simulation ended at t={self.scheduler.now():.2f} after {processed} events")

        if should_stop is not None and should_stop():
            self.stopped = True

        for engine in self.engines.values():
            engine.finalize(reason="stop" if self.stopped else "finished")
        return self.summary()

    def stop(self) -> None:
        """External stop: finalize every engine and halt the scheduler."""
        self.stopped = True
        for engine in self.engines.values():
            engine.stop()
        self.scheduler.stop()

    def summary(self) -> Dict[str, Dict[str, Any]]:
        result = {}
        for address, engine in self.engines.items():
            m = engine.metrics
            result[address] = {
                "role": engine.role.value,
                "index": engine.node_index,
                "sent": m["packets_sent"],
                "received": m["packets_received"],
                "data_sent": m["data_packets_sent"],
                "data_received": m["data_packets_received"],
                "neighbors": len(engine.neighbors),
                "routes": len(engine.routing_table.valid_destinations(self.scheduler.now())),
                "has_gcs_route": engine.routing_table.get(GCS_DESTINATION) is not None,
                "mesh_relayed": m["mesh_relayed"],
                "mesh_failures": m["mesh_delivery_failures"],
                "state": engine.state.value,
            }
        return result

    def delivery_ratio(self) -> float:
        """Sensor readings accepted by a GCS per reading sent by a UAV."""
        sent = sum(e.metrics["data_packets_sent"] for e in self.engines.values() if not e.is_gcs)
        received = sum(e.metrics["data_packets_received"] for e in self.engines.values() if e.is_gcs)
        return received / sent if sent else 0.0
