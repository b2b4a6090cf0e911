"""
Tests for the signal bus and the EventCollector.

Covers:
- Signal connect/disconnect/send_sync semantics
- One-time listener registration
- Per-request routing (explicit and ambient identity)
- Stale observations being dropped
- SQL interpolation, transaction labels, model counts
"""

import pytest
from decimal import Decimal

from tracebar.aggregator import sum_query_time
from tracebar.collector import EventCollector, interpolate_sql, model_identity
from tracebar.identity import bind_request_id, reset_request_id
from tracebar.signals import MODEL_EVENTS, ConnectionInfo, Signal, SignalBus


class User:
    def __init__(self, id):
        self.id = id

    def get_key(self):
        return self.id


class Post:
    def __init__(self, pk):
        self.pk = pk


@pytest.fixture
def collector(signal_bus):
    collector = EventCollector(signal_bus)
    collector.register_listeners()
    yield collector
    collector.unregister_listeners()


# ============================================================================
# Signal
# ============================================================================

class TestSignal:

    def test_send_delivers_sender_and_kwargs(self):
        signal = Signal("test")
        received = []
        signal.connect(lambda sender, **kw: received.append((sender, kw)))
        signal.send_sync("conn", sql="select 1")
        assert received == [("conn", {"sql": "select 1"})]

    def test_duplicate_connect_is_ignored(self):
        signal = Signal("test")
        calls = []

        def handler(sender, **kwargs):
            calls.append(sender)

        signal.connect(handler)
        signal.connect(handler)
        signal.send_sync(None)
        assert calls == [None]

    def test_decorator_form(self):
        signal = Signal("test")

        @signal.connect
        def handler(sender, **kwargs):
            return "ok"

        assert signal.send_sync(None) == ["ok"]

    def test_sender_filter(self):
        signal = Signal("test")
        calls = []
        signal.connect(lambda sender, **kw: calls.append(sender), sender=User)
        signal.send_sync(Post)
        signal.send_sync(User)
        assert calls == [User]

    def test_failing_receiver_does_not_stop_delivery(self):
        signal = Signal("test")
        calls = []

        def broken(sender, **kwargs):
            raise RuntimeError("boom")

        signal.connect(broken, priority=1)
        signal.connect(lambda sender, **kw: calls.append("after"), priority=2)
        results = signal.send_sync(None)
        assert calls == ["after"]
        assert isinstance(results[0], RuntimeError)

    def test_connected_context_manager(self):
        signal = Signal("test")
        handler = lambda sender, **kw: None  # noqa: E731
        with signal.connected(handler):
            assert signal.has_listeners()
        assert not signal.has_listeners()

    def test_disconnect(self):
        signal = Signal("test")
        handler = lambda sender, **kw: None  # noqa: E731
        signal.connect(handler)
        assert signal.disconnect(handler) is True
        assert signal.disconnect(handler) is False

    def test_bus_has_one_signal_per_model_event(self):
        bus = SignalBus()
        assert set(bus.model_signals) == set(MODEL_EVENTS)
        assert len(bus.all_signals()) == 6 + len(MODEL_EVENTS)


# ============================================================================
# Registration
# ============================================================================

class TestRegistration:

    def test_registration_happens_once(self, signal_bus):
        collector = EventCollector(signal_bus)
        assert collector.register_listeners() is True
        assert collector.register_listeners() is False

        collector.open("r1")
        signal_bus.query_executed.send_sync(None, sql="select 1", time=1.0, request_id="r1")
        assert len(collector.queries_for("r1")) == 1
        collector.unregister_listeners()

    def test_unregister_disconnects(self, signal_bus):
        collector = EventCollector(signal_bus)
        collector.register_listeners()
        collector.unregister_listeners()
        assert not any(s.has_listeners() for s in signal_bus.all_signals())


# ============================================================================
# Queries
# ============================================================================

class TestQueries:

    def test_sql_time_summed_in_milliseconds(self, collector, signal_bus):
        collector.open("r1")
        signal_bus.query_executed.send_sync(None, sql="select 1", time=12.5, request_id="r1")
        signal_bus.query_executed.send_sync(None, sql="select 2", time=7.25, request_id="r1")

        entries = collector.queries_for("r1")
        assert [e["time"] for e in entries] == [12.5, 7.25]
        assert sum_query_time(entries) == Decimal("0.019")

    def test_ambient_identity(self, collector, signal_bus):
        collector.open("r1")
        token = bind_request_id("r1")
        try:
            signal_bus.query_executed.send_sync(None, sql="select 1", time=1.0)
        finally:
            reset_request_id(token)
        assert len(collector.queries_for("r1")) == 1

    def test_isolation_between_requests(self, collector, signal_bus):
        collector.open("r1")
        collector.open("r2")
        signal_bus.query_executed.send_sync(None, sql="select 'one'", request_id="r1")
        signal_bus.query_executed.send_sync(None, sql="select 'two'", request_id="r2")

        assert [e["sql"] for e in collector.queries_for("r1")] == ["select 'one'"]
        assert [e["sql"] for e in collector.queries_for("r2")] == ["select 'two'"]

    def test_stale_request_events_are_dropped(self, collector, signal_bus):
        collector.open("r1")
        collector.close("r1")
        signal_bus.query_executed.send_sync(None, sql="select 1", request_id="r1")
        signal_bus.query_executed.send_sync(None, sql="select 1")
        assert collector.queries_for("r1") == []

    def test_bindings_interpolated(self, collector):
        collector.open("r1")
        collector.on_query_executed("select * from users where id = ? and name = ?", [1, "ada"], 2.0, "r1")
        assert collector.queries_for("r1")[0]["sql"] == "select * from users where id = 1 and name = 'ada'"

    def test_transaction_labels(self, collector, signal_bus):
        conn = ConnectionInfo(name="default", driver="sqlite")
        collector.open("r1")
        signal_bus.connection_established.send_sync(conn, request_id="r1")
        signal_bus.transaction_beginning.send_sync(conn, request_id="r1")
        signal_bus.transaction_committed.send_sync(conn, request_id="r1")
        signal_bus.transaction_rolled_back.send_sync(conn, request_id="r1")

        entries = collector.queries_for("r1")
        assert [e["sql"] for e in entries] == [
            "[default:sqlite] Connection Established",
            "[default:sqlite] Begin Transaction",
            "[default:sqlite] Commit Transaction",
            "[default:sqlite] Rollback Transaction",
        ]
        assert all(e["time"] == 0 for e in entries)


class TestInterpolateSql:

    def test_no_bindings(self):
        assert interpolate_sql("select 1") == "select 1"

    def test_literals(self):
        assert interpolate_sql("? ? ? ?", [None, True, False, 1.5]) == "NULL 1 0 1.5"

    def test_surplus_placeholders_kept(self):
        assert interpolate_sql("a = ? and b = ?", ["x"]) == "a = 'x' and b = ?"


# ============================================================================
# Models and views
# ============================================================================

class TestModels:

    def test_model_counts_first_seen_order(self, collector, signal_bus):
        collector.open("r1")
        signal_bus.model_signals["retrieved"].send_sync(User, instance=User(1), request_id="r1")
        signal_bus.model_signals["retrieved"].send_sync(User, instance=User(1), request_id="r1")
        signal_bus.model_signals["created"].send_sync(User, instance=User(2), request_id="r1")

        assert collector.model_counts("r1") == ["User:1 「2次」", "User:2 「1次」"]

    def test_model_counts_evicts(self, collector):
        collector.open("r1")
        collector.on_model_event("retrieved", User(1), "r1")
        collector.model_counts("r1")
        assert collector.model_counts("r1") == []
        assert collector.on_model_event("retrieved", User(1), "r1") is False

    def test_model_counts_without_evict(self, collector):
        collector.open("r1")
        collector.on_model_event("retrieved", User(1), "r1")
        assert collector.model_counts("r1", evict=False) == ["User:1 「1次」"]
        assert collector.model_counts("r1") == ["User:1 「1次」"]

    def test_single_element_list_unwrapped(self, collector):
        collector.open("r1")
        assert collector.on_model_event("saved", [Post(7)], "r1") is True
        assert collector.on_model_event("saved", [Post(1), Post(2)], "r1") is False
        assert collector.model_counts("r1") == ["Post:7 「1次」"]

    def test_model_identity(self):
        assert model_identity(User(3)) == ("User", 3)
        assert model_identity(Post(4)) == ("Post", 4)
        assert model_identity(object()) == ("object", None)


class TestViews:

    def test_view_rendered(self, collector, signal_bus):
        collector.open("r1")
        signal_bus.view_rendered.send_sync(None, template="home.html", request_id="r1")
        assert collector.views_for("r1") == ["home.html"]

    def test_close_evicts_everything(self, collector):
        collector.open("r1")
        collector.on_view_rendered("a.html", "r1")
        collector.on_query_executed("select 1", request_id="r1")
        collector.close("r1")
        assert collector.views_for("r1") == []
        assert collector.queries_for("r1") == []
