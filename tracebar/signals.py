"""
Tracebar Signals - process-global event bus consumed by the collector.

The host ORM / database layer fires these signals; the trace collector
listens to them. Receivers are plain callables invoked as
``receiver(sender=sender, **kwargs)``.

Usage:
    from tracebar.signals import bus, ConnectionInfo

    conn = ConnectionInfo(name="default", driver="sqlite")

    bus.query_executed.send_sync(
        conn, sql="select * from users where id = ?", bindings=[1], time=0.42,
    )
    bus.transaction_beginning.send_sync(conn)
    bus.model_signals["retrieved"].send_sync(User, instance=user)
    bus.view_rendered.send_sync(None, template="index.html")
"""

from __future__ import annotations

import contextlib
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Type

logger = logging.getLogger("tracebar.signals")

__all__ = [
    "Signal",
    "SignalBus",
    "ConnectionInfo",
    "MODEL_EVENTS",
    "bus",
]


MODEL_EVENTS = (
    "retrieved",
    "creating",
    "created",
    "updating",
    "updated",
    "saving",
    "saved",
    "deleting",
    "deleted",
    "restoring",
    "restored",
    "replicating",
)


@dataclass(frozen=True)
class ConnectionInfo:
    """Descriptor of the database connection an event came from."""

    name: str = "default"
    driver: str = "-"


class Signal:
    """
    A signal that can be connected to receiver functions.

    Receivers are sync callables taking ``sender`` plus signal-specific
    keyword arguments. Duplicate connections (same receiver, same sender
    filter) are ignored, so connecting twice never double-delivers.

    Usage:
        my_signal = Signal("my_signal")

        @my_signal.connect
        def handler(sender, **kwargs):
            ...

        my_signal.send_sync(conn, sql="select 1")
    """

    def __init__(self, name: str):
        self.name = name
        # Each entry: (receiver, sender_filter, priority)
        self._receivers: List[tuple] = []

    def connect(
        self,
        receiver: Callable = None,
        *,
        sender: Optional[Type] = None,
        priority: int = 100,
    ):
        """
        Connect a receiver function. Can be used as a decorator.

        Args:
            receiver: Callable to invoke when signal fires
            sender: Optional sender to filter on
            priority: Lower values run first (default: 100)
        """
        def _decorator(fn: Callable) -> Callable:
            self._add_receiver(fn, sender, priority)
            return fn

        if receiver is not None:
            self._add_receiver(receiver, sender, priority)
            return receiver
        return _decorator

    def _add_receiver(self, fn: Callable, sender: Optional[Type], priority: int) -> None:
        """Internal: add a receiver with deduplication."""
        # Bound methods are recreated on every attribute access, so compare
        # by equality rather than identity.
        for existing, existing_sender, _ in self._receivers:
            if existing == fn and existing_sender is sender:
                return

        self._receivers.append((fn, sender, priority))
        # Stable sort preserves insertion order for ties
        self._receivers.sort(key=lambda x: x[2])

    def disconnect(self, receiver: Callable, *, sender: Optional[Type] = None) -> bool:
        """
        Disconnect a receiver.

        Returns True if the receiver was found and removed.
        """
        for i, (fn, s, _) in enumerate(self._receivers):
            if fn == receiver and s is sender:
                self._receivers.pop(i)
                return True
        for i, (fn, _, _) in enumerate(self._receivers):
            if fn == receiver:
                self._receivers.pop(i)
                return True
        return False

    def send_sync(self, sender: Any, **kwargs) -> List[Any]:
        """
        Fire the signal synchronously.

        A receiver raising never stops delivery to the others; the
        exception is logged and placed in the result list.
        """
        results = []
        for receiver, filter_sender, _ in list(self._receivers):
            if filter_sender is not None and sender is not filter_sender:
                continue
            if inspect.iscoroutinefunction(receiver):
                logger.warning(
                    f"Signal '{self.name}': async receiver {_name_of(receiver)} "
                    f"skipped in sync send"
                )
                continue
            try:
                results.append(receiver(sender=sender, **kwargs))
            except Exception as exc:
                logger.error(
                    f"Signal '{self.name}' receiver {_name_of(receiver)} "
                    f"raised {exc.__class__.__name__}: {exc}"
                )
                results.append(exc)
        return results

    @property
    def receivers(self) -> List[Callable]:
        """List of connected receiver functions."""
        return [fn for fn, _, _ in self._receivers]

    def has_listeners(self) -> bool:
        return bool(self._receivers)

    @contextlib.contextmanager
    def connected(self, fn: Callable, *, sender: Optional[Type] = None, priority: int = 100):
        """
        Context manager for temporary signal connection.

        Usage:
            with bus.query_executed.connected(handler):
                run_queries()
        """
        self._add_receiver(fn, sender, priority)
        try:
            yield
        finally:
            self.disconnect(fn, sender=sender)

    def clear(self) -> None:
        """Remove all receivers (useful for testing)."""
        self._receivers.clear()

    def __repr__(self) -> str:
        return f"<Signal '{self.name}' receivers={len(self._receivers)}>"


def _name_of(receiver: Callable) -> str:
    return getattr(receiver, "__qualname__", None) or getattr(receiver, "__name__", repr(receiver))


class SignalBus:
    """
    The set of signals the trace collector listens to.

    ``bus`` below is the process-wide instance host code fires into.
    Tests construct their own ``SignalBus()`` for isolation.
    """

    def __init__(self):
        self.query_executed = Signal("query_executed")
        self.transaction_beginning = Signal("transaction_beginning")
        self.transaction_committed = Signal("transaction_committed")
        self.transaction_rolled_back = Signal("transaction_rolled_back")
        self.connection_established = Signal("connection_established")
        self.view_rendered = Signal("view_rendered")
        self.model_signals: Dict[str, Signal] = {
            event: Signal(f"model.{event}") for event in MODEL_EVENTS
        }

    def all_signals(self) -> List[Signal]:
        return [
            self.query_executed,
            self.transaction_beginning,
            self.transaction_committed,
            self.transaction_rolled_back,
            self.connection_established,
            self.view_rendered,
            *self.model_signals.values(),
        ]

    def clear(self) -> None:
        for signal in self.all_signals():
            signal.clear()

    def __repr__(self) -> str:
        return f"<SignalBus signals={len(self.all_signals())}>"


bus = SignalBus()
