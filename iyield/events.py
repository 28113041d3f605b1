"""
iYield Event Infrastructure

Typed, synchronous pub/sub for observers of the valuation, compliance and vault
components. Components publish after their state has committed; events are
facts for external observers and audit, never inputs to another component.

Usage
─────

    from iyield.events import EventBus, ValuationConfirmed

    bus = EventBus()

    @bus.subscribe(ValuationConfirmed)
    def on_confirmed(event: ValuationConfirmed):
        print(event.subject, event.value)

A failing handler never propagates into the publishing operation; the failure
is counted and handed to `on_error` when one is configured.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set, Type

logger = logging.getLogger(__name__)


# ════════════════════════════════════════════════════════════════════════════
# EVENT BASE
# ════════════════════════════════════════════════════════════════════════════


@dataclass
class Event:
    """
    Base class for all events in the system.

    Events are immutable facts representing something that happened.
    `occurred_at` is the component clock time at commit.
    """

    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    occurred_at: int = 0
    correlation_id: Optional[str] = None

    @property
    def event_type(self) -> str:
        return self.__class__.__name__

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["event_type"] = self.event_type
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str, sort_keys=True)

    def digest(self) -> str:
        data = json.dumps(self.to_dict(), default=str, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(data.encode("utf-8")).hexdigest()


# ════════════════════════════════════════════════════════════════════════════
# ORACLE EVENTS
# ════════════════════════════════════════════════════════════════════════════


@dataclass
class ValuationSubmitted(Event):
    """An attestor's submission was recorded as pending."""
    subject: str = ""
    attestor: str = ""
    value: int = 0
    merkle_root: str = ""
    timestamp: int = 0
    agreeing: int = 0


@dataclass
class ValuationConfirmed(Event):
    """A valuation reached the attestor threshold and became current."""
    subject: str = ""
    value: int = 0
    previous_value: Optional[int] = None
    merkle_root: str = ""
    timestamp: int = 0
    round: int = 0
    contributors: List[str] = field(default_factory=list)


@dataclass
class AttestorAdded(Event):
    attestor: str = ""


@dataclass
class AttestorRemoved(Event):
    attestor: str = ""


@dataclass
class AttestorSlashed(Event):
    attestor: str = ""
    reason: str = ""


@dataclass
class ThresholdUpdated(Event):
    required: int = 0
    active_total: int = 0


@dataclass
class CarrierUpdated(Event):
    carrier_id: str = ""
    rating: int = 0
    active: bool = True


@dataclass
class PolicyRegistered(Event):
    policy_id: str = ""
    carrier_id: str = ""
    inception_timestamp: int = 0


# ════════════════════════════════════════════════════════════════════════════
# COMPLIANCE EVENTS
# ════════════════════════════════════════════════════════════════════════════


@dataclass
class ComplianceChanged(Event):
    account: str = ""
    attribute: str = ""
    old_value: Any = None
    new_value: Any = None


@dataclass
class JurisdictionBlocked(Event):
    jurisdiction: str = ""


@dataclass
class JurisdictionUnblocked(Event):
    jurisdiction: str = ""


@dataclass
class TransferExecuted(Event):
    sender: str = ""
    recipient: str = ""
    amount: int = 0


@dataclass
class TransferBlocked(Event):
    sender: str = ""
    recipient: str = ""
    amount: int = 0
    reason: str = ""
    flags: int = 0


# ════════════════════════════════════════════════════════════════════════════
# VAULT EVENTS
# ════════════════════════════════════════════════════════════════════════════


@dataclass
class VaultConfigurationUpdated(Event):
    parameter: str = ""
    old_value: Any = None
    new_value: Any = None


@dataclass
class Deposited(Event):
    account: str = ""
    policy_ids: List[str] = field(default_factory=list)
    csv_value: int = 0
    tokens_issued: int = 0


@dataclass
class Withdrawn(Event):
    account: str = ""
    tokens_burned: int = 0
    csv_returned: int = 0


@dataclass
class Liquidated(Event):
    account: str = ""
    liquidator: str = ""
    tokens_seized: int = 0
    csv_released: int = 0
    resulting_status: str = ""


@dataclass
class EmergencyPauseToggled(Event):
    paused: bool = False
    actor: str = ""
    component: str = "vault"


# ════════════════════════════════════════════════════════════════════════════
# EVENT BUS
# ════════════════════════════════════════════════════════════════════════════


EventHandler = Callable[[Event], None]


@dataclass
class EventHandlerRegistration:
    """Registration for an event handler."""
    handler: EventHandler
    event_types: Set[Type[Event]]
    priority: int = 0
    filter_func: Optional[Callable[[Event], bool]] = None


class EventHandlerError(Exception):
    """Error during event handling."""
    def __init__(self, event: Event, handler: EventHandler, cause: Exception):
        self.event = event
        self.handler = handler
        self.cause = cause
        name = getattr(handler, "__name__", repr(handler))
        super().__init__(f"Handler {name} failed for {event.event_type}: {cause}")


class EventBus:
    """
    In-memory event bus for pub/sub communication.

    Handlers run synchronously in priority order. Every published event is also
    kept in an append-only history for audit queries.

    Example:
        bus = EventBus()

        @bus.subscribe(Deposited, Withdrawn)
        def track(event):
            print(event.event_type)
    """

    def __init__(
        self,
        on_error: Optional[Callable[[EventHandlerError], None]] = None,
        history_limit: int = 10_000,
    ):
        self._handlers: List[EventHandlerRegistration] = []
        self._history: List[Event] = []
        self._history_limit = history_limit
        self._lock = threading.RLock()
        self._on_error = on_error
        self._published_count = 0
        self._handled_count = 0
        self._error_count = 0

    def subscribe(
        self,
        *event_types: Type[Event],
        priority: int = 0,
        filter_func: Optional[Callable[[Event], bool]] = None,
    ) -> Callable[[EventHandler], EventHandler]:
        """
        Decorator to subscribe a handler to event types.

        With no event types the handler receives every event.
        """
        def decorator(handler: EventHandler) -> EventHandler:
            registration = EventHandlerRegistration(
                handler=handler,
                event_types=set(event_types) if event_types else {Event},
                priority=priority,
                filter_func=filter_func,
            )
            with self._lock:
                self._handlers.append(registration)
                self._handlers.sort(key=lambda r: -r.priority)
            return handler
        return decorator

    def unsubscribe(self, handler: EventHandler) -> bool:
        with self._lock:
            original_len = len(self._handlers)
            self._handlers = [r for r in self._handlers if r.handler != handler]
            return len(self._handlers) < original_len

    def publish(self, event: Event) -> None:
        """Publish an event to all matching subscribers."""
        with self._lock:
            self._published_count += 1
            self._history.append(event)
            if len(self._history) > self._history_limit:
                del self._history[: len(self._history) - self._history_limit]

            handlers_to_call = [
                r for r in self._handlers
                if any(isinstance(event, t) for t in r.event_types)
                and (r.filter_func is None or r.filter_func(event))
            ]

        # Call handlers outside the lock
        for registration in handlers_to_call:
            self._call_handler(registration.handler, event)

    def _call_handler(self, handler: EventHandler, event: Event) -> None:
        try:
            handler(event)
            with self._lock:
                self._handled_count += 1
        except Exception as e:
            with self._lock:
                self._error_count += 1
            error = EventHandlerError(event, handler, e)
            logger.warning("%s", error)
            if self._on_error:
                self._on_error(error)

    def history(self, *event_types: Type[Event]) -> List[Event]:
        """Published events, oldest first, optionally filtered by type."""
        with self._lock:
            events = list(self._history)
        if event_types:
            events = [e for e in events if isinstance(e, event_types)]
        return events

    @property
    def metrics(self) -> Dict[str, int]:
        with self._lock:
            return {
                "published_count": self._published_count,
                "handled_count": self._handled_count,
                "error_count": self._error_count,
                "handler_count": len(self._handlers),
            }
