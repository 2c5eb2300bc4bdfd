# Copyright 2024 FANET Mesh Contributors
# SPDX-License-Identifier: Apache-2.0
"""
Mobility models supplying node positions to the protocol engine.

StaticMobility keeps a node in place (typically the GCS).
ArbitraryMobility moves a UAV at constant speed inside a bounded box,
bouncing off the area and altitude limits and occasionally turning.
"""

import logging
import math
import random
from dataclasses import dataclass
from typing import Optional

from .mesh.neighbors import Position

logger = logging.getLogger(__name__)


class StaticMobility:
    """Fixed position."""

    def __init__(self, position: Position):
        self.position = position

    def current_position(self) -> Position:
        return self.position

    def move(self, now: float) -> Position:
        return self.position


@dataclass
class Bounds:
    """Constraint area for moving nodes, in meters."""
    min_x: float = 0.0
    max_x: float = 2000.0
    min_y: float = 0.0
    max_y: float = 2000.0
    min_z: float = 50.0
    max_z: float = 300.0


class ArbitraryMobility:
    """
    Constant-speed movement with bounce at the constraint area.

    On each update the position advances by velocity * elapsed time. A
    coordinate that crosses a limit is pulled back 1m inside it and the
    matching velocity component is reflected. When no bounce happened,
    there is a 10% chance the horizontal heading is re-drawn uniformly
    while keeping the horizontal speed.
    """

    TURN_PROBABILITY = 0.1
    BOUNCE_MARGIN = 1.0

    def __init__(
        self,
        initial: Position,
        min_speed: float,
        max_speed: float,
        bounds: Optional[Bounds] = None,
        rng: Optional[random.Random] = None,
        start_time: float = 0.0,
    ):
        self.rng = rng or random.Random()
        self.bounds = bounds or Bounds()
        self.position = initial
        speed = self.rng.uniform(min_speed, max_speed)
        self.vx, self.vy, self.vz = speed, 0.0, 0.0
        self.last_update = start_time

    def current_position(self) -> Position:
        return self.position

    def _clamp(self, value: float, velocity: float, low: float, high: float):
        if value <= low:
            return low + self.BOUNCE_MARGIN, abs(velocity), True
        if value >= high:
            return high - self.BOUNCE_MARGIN, -abs(velocity), True
        return value, velocity, False

    def move(self, now: float) -> Position:
        """Advance the position to simulated time `now`."""
        if now > self.last_update:
            dt = now - self.last_update
            b = self.bounds

            x, self.vx, bx = self._clamp(self.position.x + self.vx * dt, self.vx, b.min_x, b.max_x)
            y, self.vy, by = self._clamp(self.position.y + self.vy * dt, self.vy, b.min_y, b.max_y)
            z, self.vz, bz = self._clamp(self.position.z + self.vz * dt, self.vz, b.min_z, b.max_z)
            bounced = bx or by or bz

            if not bounced and self.rng.uniform(0, 1) < self.TURN_PROBABILITY:
                angle = self.rng.uniform(0, 2 * math.pi)
                speed = math.sqrt(self.vx * self.vx + self.vy * self.vy)
                self.vx = speed * math.cos(angle)
                self.vy = speed * math.sin(angle)

            if bounced:
                logger.debug(f"UAV bounced at position ({x:.1f}, {y:.1f}, {z:.1f})")

            self.position = Position(x, y, z)

        self.last_update = now
        return self.position
