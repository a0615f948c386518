"""
Custody Events

Typed records of committed vault state changes, and the synchronous bus
they are published on.

A vault appends each event to its own log and publishes it only after the
operation that produced it has committed. Subscribers therefore never see
an effect that is later rolled back, and a failing subscriber cannot undo
one.

    bus = EventBus()

    @bus.subscribe(Deposited)
    def on_deposit(event: Deposited):
        print(event.account, event.net, event.fee)

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import threading
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Tuple, Type

from custody.canonical import jcs_canonicalize, sha256_hex
from custody.observability import VaultLayer, get_logger

logger = get_logger("events", VaultLayer.AUDIT)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ════════════════════════════════════════════════════════════════════════════
# EVENT TYPES
# ════════════════════════════════════════════════════════════════════════════


@dataclass
class Event:
    """Common envelope: unique id, UTC timestamp and the correlation id of the operation."""

    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    event_timestamp: str = field(default_factory=_utc_now)
    correlation_id: Optional[str] = None

    @property
    def event_type(self) -> str:
        return type(self).__name__

    def to_dict(self) -> Dict[str, Any]:
        return {**asdict(self), "event_type": self.event_type}

    def digest(self) -> str:
        """SHA-256 over the canonical JSON form of the event."""
        return sha256_hex(jcs_canonicalize(self.to_dict()))


# ════════════════════════════════════════════════════════════════════════════
# DOMAIN EVENTS
# ════════════════════════════════════════════════════════════════════════════


@dataclass
class Deposited(Event):
    """Funds entered custody; ``fee`` went to the treasury."""
    account: str = ""
    asset: str = ""
    net: int = 0
    fee: int = 0


@dataclass
class Withdrawn(Event):
    """An authorized release from custody committed under ``nonce``."""
    account: str = ""
    amount: int = 0
    nonce: int = 0


@dataclass
class TreasuryWithdrawn(Event):
    """Native funds swept from custody to the treasury."""
    account: str = ""
    treasury: str = ""
    amount: int = 0


@dataclass
class Paused(Event):
    account: str = ""


@dataclass
class Unpaused(Event):
    account: str = ""


@dataclass
class CapabilityGranted(Event):
    account: str = ""
    capability: str = ""
    sender: str = ""


@dataclass
class CapabilityRevoked(Event):
    account: str = ""
    capability: str = ""
    sender: str = ""


# ════════════════════════════════════════════════════════════════════════════
# EVENT BUS
# ════════════════════════════════════════════════════════════════════════════


EventHandler = Callable[[Event], None]


class Subscription(NamedTuple):
    handler: EventHandler
    event_types: Tuple[Type[Event], ...]
    priority: int


class EventBus:
    """
    Synchronous publish/subscribe within one process.

    Subscribers run in descending priority, ties in subscription order. An
    exception in one subscriber is logged and counted, and the remaining
    subscribers still run.
    """

    def __init__(self):
        self._subscriptions: List[Subscription] = []
        self._lock = threading.RLock()
        self._published = 0
        self._failures = 0

    def subscribe(
        self,
        *event_types: Type[Event],
        priority: int = 0,
    ) -> Callable[[EventHandler], EventHandler]:
        """Decorator registering a handler for ``event_types``, or for every event if none are given."""
        def register(handler: EventHandler) -> EventHandler:
            entry = Subscription(handler, event_types or (Event,), priority)
            with self._lock:
                position = sum(1 for s in self._subscriptions if s.priority >= priority)
                self._subscriptions.insert(position, entry)
            return handler
        return register

    def unsubscribe(self, handler: EventHandler) -> bool:
        """Remove every registration of ``handler``; False if there were none."""
        with self._lock:
            kept = [s for s in self._subscriptions if s.handler is not handler]
            removed = len(kept) != len(self._subscriptions)
            self._subscriptions = kept
        return removed

    def publish(self, event: Event) -> None:
        with self._lock:
            self._published += 1
            targets = [s for s in self._subscriptions if isinstance(event, s.event_types)]

        for subscription in targets:
            try:
                subscription.handler(event)
            except Exception:
                with self._lock:
                    self._failures += 1
                name = getattr(subscription.handler, "__name__", repr(subscription.handler))
                logger.error(
                    f"subscriber {name} failed on {event.event_type}",
                    error_code="EVENT_HANDLER_FAILED",
                    exc_info=True,
                    event_id=event.event_id,
                )

    @property
    def metrics(self) -> Dict[str, int]:
        with self._lock:
            return {
                "published_count": self._published,
                "error_count": self._failures,
                "handler_count": len(self._subscriptions),
            }
