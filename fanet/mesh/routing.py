# Copyright 2024 FANET Mesh Contributors
# SPDX-License-Identifier: Apache-2.0
"""
Reactive mesh routing state for the FANET.

Routes are learned from ROUTE_REQUEST (reverse path toward the
originator) and ROUTE_REPLY (forward path toward the destination)
messages and kept per destination as a single best next hop.

Key features:
- Update-if-better rule so worse paths never replace a valid better one
- Lazy expiry: entries are invalidated on lookup, never swept
- RREQ dedup ledger keyed by (originator, sequence number)

Example flow:
    1. UAV A has no route to the GCS and broadcasts ROUTE_REQUEST
    2. UAV B learns "A via A, 1 hop" and rebroadcasts
    3. The GCS learns "A via B, 2 hops" and answers with ROUTE_REPLY
    4. B learns "GCS via GCS, 1 hop" and forwards the reply to A
    5. A learns "GCS via B, 2 hops" and sends MESH_DATA through B
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Any, Tuple

logger = logging.getLogger(__name__)


@dataclass
class RouteEntry:
    """
    Best known path to a destination.

    Attributes:
        destination: Destination address (or the logical "GCS" target)
        next_hop: Address of the neighbor to forward to
        hop_count: Hops from this node to the destination
        timestamp: Simulated time the route was written
        valid: False once the route aged past the route timeout
    """
    destination: str
    next_hop: str
    hop_count: int
    timestamp: float
    valid: bool = True

    def is_expired(self, now: float, timeout: float) -> bool:
        return now - self.timestamp > timeout


class RoutingTable:
    """
    Per-destination routing table.

    Attributes:
        route_timeout: Seconds after which an entry is invalidated
    """

    def __init__(self, route_timeout: float = 60.0):
        self.route_timeout = route_timeout
        self._routes: Dict[str, RouteEntry] = {}

    def __len__(self) -> int:
        return len(self._routes)

    def __contains__(self, destination: str) -> bool:
        return destination in self._routes

    def get(self, destination: str) -> Optional[RouteEntry]:
        """Raw stored entry, valid or not, without applying expiry."""
        return self._routes.get(destination)

    def update(self, destination: str, next_hop: str, hop_count: int, now: float) -> bool:
        """
        Record a route if it is new or better than what we have.

        The entry is written when there is none, the current one is
        invalid, or `hop_count` is strictly smaller than the current one.

        Returns:
            True if the table changed
        """
        current = self._routes.get(destination)
        if current is not None and current.valid and hop_count >= current.hop_count:
            return False

        self._routes[destination] = RouteEntry(
            destination=destination,
            next_hop=next_hop,
            hop_count=hop_count,
            timestamp=now,
        )
        logger.debug(f"Route updated: {destination} via {next_hop} ({hop_count} hops)")
        return True

    def lookup_entry(self, destination: str, now: float) -> Optional[RouteEntry]:
        """Valid entry for `destination`, invalidating it first if it expired."""
        entry = self._routes.get(destination)
        if entry is None:
            return None

        if entry.valid and entry.is_expired(now, self.route_timeout):
            entry.valid = False
            logger.debug(f"Route expired: {destination} via {entry.next_hop}")

        return entry if entry.valid else None

    def lookup(self, destination: str, now: float) -> Optional[str]:
        """Next hop toward `destination`, or None if no valid route exists."""
        entry = self.lookup_entry(destination, now)
        return entry.next_hop if entry else None

    def valid_destinations(self, now: float) -> List[str]:
        return [d for d in list(self._routes) if self.lookup_entry(d, now) is not None]

    def snapshot(self, now: float) -> Dict[str, Dict[str, Any]]:
        """Routing table contents for debugging."""
        return {
            dest: {
                "next_hop": r.next_hop,
                "hops": r.hop_count,
                "age": now - r.timestamp,
                "valid": r.valid and not r.is_expired(now, self.route_timeout),
            }
            for dest, r in self._routes.items()
        }


class RouteRequestCache:
    """
    Ledger of route requests already processed.

    This is the only RREQ flood suppression: each (originator, sequence
    number) pair is handled once per node.
    """

    def __init__(self):
        self._records: Dict[Tuple[str, int], float] = {}

    def __len__(self) -> int:
        return len(self._records)

    def seen(self, originator: str, sequence_number: int, now: float) -> bool:
        """
        Check and record a route request.

        Returns:
            True if the pair was already recorded, False on first sighting
        """
        key = (originator, sequence_number)
        if key in self._records:
            return True
        self._records[key] = now
        return False

    def evict_expired(self, now: float, timeout: float) -> int:
        """Forget requests recorded more than `timeout` seconds ago."""
        expired = [key for key, ts in self._records.items() if now - ts > timeout]
        for key in expired:
            del self._records[key]

        if expired:
            logger.debug(f"Cleaned {len(expired)} route request records")
        return len(expired)
