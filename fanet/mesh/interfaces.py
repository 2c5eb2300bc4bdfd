# Copyright 2024 FANET Mesh Contributors
# SPDX-License-Identifier: Apache-2.0
"""
Collaborator interfaces consumed by the protocol engine.

The engine does not own mobility, datagram delivery, timing or
statistics; it is handed objects satisfying these protocols at
construction time.
"""

from typing import Callable, Protocol

from .neighbors import Position


class TimerHandle:
    """
    Opaque handle for a scheduled callback.

    A handle belongs to the scheduler that created it and can be
    cancelled once; a cancelled or fired handle never runs again.
    """

    __slots__ = ("owner", "when", "callback", "name", "cancelled", "fired")

    def __init__(self, owner: object, when: float, callback: Callable[[], None], name: str = ""):
        self.owner = owner
        self.when = when
        self.callback = callback
        self.name = name
        self.cancelled = False
        self.fired = False

    @property
    def pending(self) -> bool:
        return not (self.cancelled or self.fired)

    def __repr__(self) -> str:
        state = "pending" if self.pending else ("cancelled" if self.cancelled else "fired")
        return f"<TimerHandle {self.name or '?'} at {self.when:.3f} {state}>"


class PositionProvider(Protocol):
    def current_position(self) -> Position: ...


class Transport(Protocol):
    def bind(self, port: int, callback: Callable[[bytes, str], None]) -> None: ...

    def send_unicast(self, data: bytes, address: str, port: int) -> bool: ...

    def send_broadcast(self, data: bytes, port: int) -> bool: ...


class Scheduler(Protocol):
    def now(self) -> float: ...

    def schedule_after(self, delay: float, callback: Callable[[], None], name: str = "") -> TimerHandle: ...

    def cancel(self, handle: TimerHandle) -> None: ...


class DiagnosticsSink(Protocol):
    def record(self, node: str, name: str, value: float) -> None: ...
