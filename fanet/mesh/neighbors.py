# Copyright 2024 FANET Mesh Contributors
# SPDX-License-Identifier: Apache-2.0
"""
Neighbor tracking for the FANET mesh.

Keeps the set of peers heard directly within transmission range, their
last reported position and role, and when they were last heard from.

Entries are admitted by the protocol engine after its range check; this
table never filters by distance itself.
"""

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterator, Optional, Tuple, TYPE_CHECKING

if TYPE_CHECKING:
    from .interfaces import PositionProvider

logger = logging.getLogger(__name__)


class NodeRole(Enum):
    """Role of a node in the FANET."""
    UAV = "UAV"
    GCS = "GCS"


@dataclass(frozen=True)
class Position:
    """3D coordinate in meters."""
    x: float
    y: float
    z: float

    def distance_to(self, other: "Position") -> float:
        """Euclidean distance to another position."""
        dx = self.x - other.x
        dy = self.y - other.y
        dz = self.z - other.z
        return math.sqrt(dx * dx + dy * dy + dz * dz)

    def __str__(self) -> str:
        return f"({int(self.x)},{int(self.y)},{int(self.z)})"


@dataclass
class NeighborEntry:
    """
    Information about a directly heard peer.

    Attributes:
        address: Peer network address
        position: Last position the peer reported
        role: UAV or GCS
        last_seen: Simulated time the peer was last heard from
        distance: Distance from this node when the entry was written
    """
    address: str
    position: Position
    role: NodeRole
    last_seen: float
    distance: float = 0.0

    @property
    def is_gcs(self) -> bool:
        return self.role is NodeRole.GCS

    def age(self, now: float) -> float:
        """Seconds since the peer was last heard from."""
        return now - self.last_seen

    def relay_score(self, now: float) -> float:
        """Proximity/recency blend used to rank relay candidates."""
        return (1.0 / (1.0 + self.distance / 100.0)) * (1.0 / (1.0 + self.age(now)))


class NeighborTable:
    """
    Per-node table of recently heard peers, keyed by address.

    Insertion order is preserved, so "first" in the queries below means
    the earliest inserted peer still present.
    """

    def __init__(self, position_provider: "PositionProvider"):
        self.position_provider = position_provider
        self._entries: Dict[str, NeighborEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, address: str) -> bool:
        return address in self._entries

    def __iter__(self) -> Iterator[NeighborEntry]:
        return iter(list(self._entries.values()))

    def get(self, address: str) -> Optional[NeighborEntry]:
        return self._entries.get(address)

    def upsert(self, address: str, position: Position, role: NodeRole, now: float) -> NeighborEntry:
        """
        Insert or refresh a neighbor entry.

        Distance is measured from this node's current position. Refreshing
        an existing neighbor overwrites it in place, keeping its original
        insertion slot.

        Returns:
            The stored entry
        """
        my_position = self.position_provider.current_position()
        entry = NeighborEntry(
            address=address,
            position=position,
            role=role,
            last_seen=now,
            distance=my_position.distance_to(position),
        )

        is_new = address not in self._entries
        self._entries[address] = entry

        if is_new:
            logger.info(f"New neighbor: {role.value} {address} @ {int(entry.distance)}m")
        return entry

    def evict_expired(self, now: float, timeout: float) -> int:
        """
        Remove every neighbor not heard from within `timeout` seconds.

        Returns:
            Number of entries removed
        """
        expired = [addr for addr, e in self._entries.items() if now - e.last_seen > timeout]
        for address in expired:
            del self._entries[address]

        if expired:
            logger.debug(f"Cleaned {len(expired)} expired neighbors")
        return len(expired)

    def find_gcs(self) -> Optional[NeighborEntry]:
        """First neighbor with the GCS role, regardless of distance."""
        for entry in self._entries.values():
            if entry.is_gcs:
                return entry
        return None

    def best_relay(self, max_range: float, now: float) -> Optional[NeighborEntry]:
        """
        Pick the UAV neighbor best suited to relay toward the GCS.

        Candidates are UAVs within `max_range`; the highest relay score wins
        and ties keep the first candidate encountered.
        """
        best: Optional[NeighborEntry] = None
        best_score = -1.0

        for entry in self._entries.values():
            if entry.is_gcs or entry.distance > max_range:
                continue
            score = entry.relay_score(now)
            if score > best_score:
                best = entry
                best_score = score

        return best

    def counts(self) -> Tuple[int, int, bool]:
        """Return (total neighbors, UAV neighbors, whether a GCS is present)."""
        uavs = sum(1 for e in self._entries.values() if not e.is_gcs)
        return len(self._entries), uavs, uavs < len(self._entries)
