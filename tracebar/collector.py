"""
EventCollector - turns framework signals into per-request observations.

One collector lives for the whole process (owned by the Tracer). It
listens on the signal bus once; every observation is routed to the
partition of the request it belongs to, identified either by an
explicit ``request_id=`` on the signal or by the ambient request
identity. Observations for requests without an open partition (already
finished, or never traced) are dropped.
"""

from __future__ import annotations

import logging
from collections import Counter
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .identity import current_request_id
from .signals import MODEL_EVENTS, ConnectionInfo, SignalBus, bus as default_bus
from .store import PartitionedStore

logger = logging.getLogger("tracebar.collector")


TRANSACTION_LABELS = {
    "begin": "Begin Transaction",
    "commit": "Commit Transaction",
    "rollback": "Rollback Transaction",
    "connected": "Connection Established",
}


def interpolate_sql(sql: str, bindings: Optional[Sequence[Any]] = None) -> str:
    """
    Substitute ``?`` placeholders with bindings, in order.

    Strings are single-quoted; ``None`` becomes NULL and bools 1/0.
    Surplus placeholders are left as they are.
    """
    if not bindings:
        return sql

    values = iter(bindings)
    parts = sql.split("?")
    out = [parts[0]]
    for part in parts[1:]:
        try:
            value = next(values)
        except StopIteration:
            out.append("?")
        else:
            out.append(_sql_literal(value))
        out.append(part)
    return "".join(out)


def _sql_literal(value: Any) -> str:
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, bytes):
        value = value.decode("utf-8", "replace")
    return f"'{value}'"


def model_identity(model: Any) -> Tuple[str, Any]:
    """
    (type name, primary key) for a model instance.

    Looks for ``get_key()``, ``pk``, then ``id``.
    """
    name = type(model).__name__
    getter = getattr(model, "get_key", None)
    if callable(getter):
        return name, getter()
    for attr in ("pk", "id"):
        key = getattr(model, attr, None)
        if key is not None:
            return name, key
    return name, None


def make_registrar(signal_bus: SignalBus) -> Callable[["EventCollector"], bool]:
    """
    Build the one-time listener registration step for ``signal_bus``.

    The returned callable connects the collector on its first call and
    is a no-op afterwards; it returns whether it connected anything.
    """
    registered = False

    def register(collector: "EventCollector") -> bool:
        nonlocal registered
        if registered:
            return False
        try:
            signal_bus.query_executed.connect(collector._query_receiver)
            signal_bus.transaction_beginning.connect(collector._begin_receiver)
            signal_bus.transaction_committed.connect(collector._commit_receiver)
            signal_bus.transaction_rolled_back.connect(collector._rollback_receiver)
            signal_bus.connection_established.connect(collector._connected_receiver)
            signal_bus.view_rendered.connect(collector._view_receiver)
            for event in MODEL_EVENTS:
                signal_bus.model_signals[event].connect(collector._model_receivers[event])
        except Exception:
            logger.warning("Trace listeners could not be registered; SQL/model tabs disabled", exc_info=True)
            return False
        registered = True
        return True

    return register


class EventCollector:
    """
    Process-wide observation collector.

    Stores:
        queries: request_id -> [{"sql", "type", "time"}]
        models:  request_id -> [{"model", "id", "event"}]
        views:   request_id -> [template name]
    """

    def __init__(self, signal_bus: Optional[SignalBus] = None, *, partition_ttl: float = 3600.0):
        self.bus = signal_bus or default_bus
        self.queries = PartitionedStore("queries", ttl=partition_ttl)
        self.models = PartitionedStore("models", ttl=partition_ttl)
        self.views = PartitionedStore("views", ttl=partition_ttl)
        self._register = make_registrar(self.bus)
        self._model_receivers: Dict[str, Callable[..., None]] = {
            event: self._make_model_receiver(event) for event in MODEL_EVENTS
        }

    # ========================================================================
    # Lifecycle
    # ========================================================================

    def register_listeners(self) -> bool:
        return self._register(self)

    def unregister_listeners(self) -> None:
        """Disconnect from the bus (test teardown, tracer shutdown)."""
        self.bus.query_executed.disconnect(self._query_receiver)
        self.bus.transaction_beginning.disconnect(self._begin_receiver)
        self.bus.transaction_committed.disconnect(self._commit_receiver)
        self.bus.transaction_rolled_back.disconnect(self._rollback_receiver)
        self.bus.connection_established.disconnect(self._connected_receiver)
        self.bus.view_rendered.disconnect(self._view_receiver)
        for event in MODEL_EVENTS:
            self.bus.model_signals[event].disconnect(self._model_receivers[event])

    def open(self, request_id: str) -> None:
        self.queries.open(request_id)
        self.models.open(request_id)
        self.views.open(request_id)

    def close(self, request_id: str) -> None:
        self.queries.evict(request_id)
        self.models.evict(request_id)
        self.views.evict(request_id)

    def sweep(self) -> int:
        return self.queries.sweep() + self.models.sweep() + self.views.sweep()

    # ========================================================================
    # Observations
    # ========================================================================

    def on_query_executed(
        self,
        sql: str,
        bindings: Optional[Sequence[Any]] = None,
        time_ms: Optional[float] = None,
        request_id: Optional[str] = None,
    ) -> bool:
        """Record a query for ``request_id`` (ambient identity when omitted)."""
        rid = request_id or current_request_id()
        return self.queries.append(rid, {
            "sql": interpolate_sql(sql, bindings),
            "type": "Query",
            "time": time_ms,
        })

    def on_transaction_event(
        self,
        kind: str,
        connection: Optional[ConnectionInfo] = None,
        request_id: Optional[str] = None,
    ) -> bool:
        connection = connection or ConnectionInfo()
        name = getattr(connection, "name", "default")
        driver = getattr(connection, "driver", "-")
        label = TRANSACTION_LABELS.get(kind, kind)
        rid = request_id or current_request_id()
        return self.queries.append(rid, {
            "sql": f"[{name}:{driver}] {label}",
            "type": "Transaction",
            "time": 0,
        })

    def on_model_event(self, event_kind: str, model: Any, request_id: Optional[str] = None) -> bool:
        if isinstance(model, (list, tuple)):
            if len(model) != 1:
                return False
            model = model[0]
        if model is None:
            return False

        name, key = model_identity(model)
        rid = request_id or current_request_id()
        return self.models.append(rid, {"model": name, "id": key, "event": event_kind})

    def on_view_rendered(self, template: str, request_id: Optional[str] = None) -> bool:
        rid = request_id or current_request_id()
        return self.views.append(rid, str(template))

    # ========================================================================
    # Reads
    # ========================================================================

    def queries_for(self, request_id: str) -> List[Dict[str, Any]]:
        return self.queries.get(request_id)

    def views_for(self, request_id: str) -> List[str]:
        return self.views.get(request_id)

    def model_counts(self, request_id: str, *, evict: bool = True) -> List[str]:
        """
        ``"Model:id 「N次」"`` per distinct (model, id), first-seen order.

        Evicts the request's model partition unless ``evict`` is False.
        """
        events = self.models.evict(request_id) if evict else self.models.get(request_id)
        counts = Counter(f"{e['model']}:{e['id']}" for e in events)
        return [f"{key} 「{num}次」" for key, num in counts.items()]

    # ========================================================================
    # Signal receivers
    # ========================================================================

    def _query_receiver(self, sender: Any = None, *, sql: str, bindings=None, time=None, request_id=None, **kwargs):
        self.on_query_executed(sql, bindings, time, request_id)

    def _begin_receiver(self, sender: Any = None, *, request_id=None, **kwargs):
        self.on_transaction_event("begin", sender, request_id)

    def _commit_receiver(self, sender: Any = None, *, request_id=None, **kwargs):
        self.on_transaction_event("commit", sender, request_id)

    def _rollback_receiver(self, sender: Any = None, *, request_id=None, **kwargs):
        self.on_transaction_event("rollback", sender, request_id)

    def _connected_receiver(self, sender: Any = None, *, request_id=None, **kwargs):
        self.on_transaction_event("connected", sender, request_id)

    def _view_receiver(self, sender: Any = None, *, template: str, request_id=None, **kwargs):
        self.on_view_rendered(template, request_id)

    def _make_model_receiver(self, event: str) -> Callable[..., None]:
        def receiver(sender: Any = None, *, instance: Any, request_id=None, **kwargs):
            self.on_model_event(event, instance, request_id)
        receiver.__qualname__ = f"EventCollector.model_{event}"
        return receiver

    def __repr__(self) -> str:
        return f"<EventCollector open={len(self.queries)}>"
