"""Tests for the metrics engine and its flush cycle."""

from __future__ import annotations

import threading
from unittest.mock import MagicMock, patch

import pytest

from libratobuf.config import Config
from libratobuf.engine import MetricsEngine
from libratobuf.errors import ConfigurationError, TransportError
from libratobuf.transport import LibratoTransport, NullTransport, SubmissionResult


@pytest.fixture
def make_engine(clock, transport):
    """Build engines sharing the fake clock and mock transport."""

    def factory(**options) -> MetricsEngine:
        options.setdefault("source", "test")
        return MetricsEngine(transport=transport, clock=clock, **options)

    return factory


def gauge_values(result) -> dict[tuple[str, str], float]:
    """Index a flush result's gauges by (name, source)."""
    return {(g["name"], g["source"]): g["value"] for g in result.batch.gauges}


class TestConstruction:
    """Tests for engine construction."""

    def test_default_transport_needs_credentials(self):
        with pytest.raises(ConfigurationError):
            MetricsEngine(Config())

    def test_default_transport_built_from_config(self):
        engine = MetricsEngine(email="ops@example.com", token="secret")
        assert isinstance(engine.transport, LibratoTransport)
        engine.close()

    def test_skip_submit_uses_null_transport(self, transport):
        engine = MetricsEngine(transport=transport, skip_submit=True)
        assert isinstance(engine.transport, NullTransport)

    def test_options_override_config(self, transport):
        config = Config(period_ms=1000, source="a")
        engine = MetricsEngine(config, transport=transport, source="b")
        assert engine.config.source == "b"
        assert engine.config.period_ms == 1000
        assert config.source == "a"

    def test_invalid_definition_is_fatal(self, transport):
        with pytest.raises(ConfigurationError):
            MetricsEngine(
                transport=transport,
                definitions={"bad": {"client_agg_function": "mode"}},
            )

    def test_polling_interval(self, make_engine):
        assert make_engine().polling_interval_ms == 3000
        assert make_engine(period_ms=5000).polling_interval_ms == 1000

    def test_engines_are_independent(self, make_engine):
        first = make_engine()
        second = make_engine()
        first.measure("a", 1)
        assert second.buffer.keys_present() == set()
        assert "a" not in second.registry


class TestRecording:
    """Tests for measure() and increment()."""

    def test_measure_auto_registers_mean(self, make_engine):
        engine = make_engine()
        engine.measure("latency", 10)
        assert engine.registry.get("latency").client_agg_function == "mean"

    def test_increment_auto_registers_sum(self, make_engine):
        engine = make_engine()
        engine.increment("hits")
        assert engine.registry.get("hits").client_agg_function == "sum"
        assert engine.aggregate_keys("hits")["hits"]["test"].value == 1

    def test_increment_zero_is_recorded_as_zero(self, make_engine):
        engine = make_engine()
        engine.increment("hits", 0)
        assert engine.aggregate_keys("hits")["hits"]["test"].value == 0

    def test_increment_non_sum_metric_raises(self, make_engine):
        """Test incrementing a mean metric fails and records nothing."""
        engine = make_engine(definitions={"latency": {"client_agg_function": "mean"}})

        with pytest.raises(ConfigurationError) as exc_info:
            engine.increment("latency", 5)

        assert "latency" in str(exc_info.value)
        assert engine.buffer.count("latency") == 0

    def test_increment_after_measure_raises(self, make_engine):
        engine = make_engine()
        engine.measure("latency", 1)
        with pytest.raises(ConfigurationError):
            engine.increment("latency")

    def test_blacklisted_key_is_silent_noop(self, make_engine):
        engine = make_engine(blacklist=[r"^debug\."])
        assert engine.measure("debug.sql", 1) is False
        assert engine.increment("debug.calls") is False
        assert engine.buffer.keys_present() == set()
        assert "debug.sql" not in engine.registry

    def test_source_precedence(self, make_engine):
        """Test call source beats definition source beats default source."""
        engine = make_engine(definitions={"pinned": {"source": "db-1"}})
        engine.measure("pinned", 1)
        engine.measure("pinned", 2, source="db-2")
        engine.measure("free", 3)

        snapshot = engine.buffer.snapshot()
        assert set(snapshot["pinned"]) == {"db-1", "db-2"}
        assert set(snapshot["free"]) == {"test"}

    def test_hostname_source_fallback(self, clock, transport):
        engine = MetricsEngine(transport=transport, clock=clock)
        with patch("libratobuf.engine.socket.gethostname", return_value="host-9"):
            engine.measure("a", 1)
        assert set(engine.buffer.snapshot()["a"]) == {"host-9"}

    def test_non_numeric_value_rejected(self, make_engine):
        engine = make_engine()
        with pytest.raises(TypeError):
            engine.measure("a", "12")


class TestAggregation:
    """Tests for aggregation through the engine."""

    def test_sum_per_source(self, make_engine):
        """Test sums are computed per source without mixing."""
        engine = make_engine()
        engine.increment("foo", 2, source="bar")
        engine.increment("foo", 3, source="baz")

        by_source = engine.aggregate_keys(["foo"])["foo"]
        assert by_source["bar"].value == 2
        assert by_source["baz"].value == 3

    def test_mean(self, make_engine):
        engine = make_engine()
        engine.measure("foo", 2)
        engine.measure("foo", 4)
        assert engine.aggregate_all()["foo"]["test"].value == 3

    def test_quantiles(self, make_engine):
        engine = make_engine(definitions={"key": {"client_agg_function": "quantiles"}})
        for i in range(101):
            engine.measure("key", i)

        result = engine.aggregate_all()
        assert result["key.q0"]["test"].value == 0
        assert result["key.q50"]["test"].value == 50
        assert result["key.q100"]["test"].value == 100

    def test_key_without_samples_yields_nothing(self, make_engine):
        engine = make_engine()
        assert engine.aggregate_keys(["never"]) == {}

    def test_clear_keys(self, make_engine):
        engine = make_engine()
        engine.measure("a", 1)
        engine.measure("b", 1)
        engine.clear_keys("a")
        assert engine.buffer.keys_present() == {"b"}


class TestGather:
    """Tests for gather()."""

    def test_gauges_are_flat_triples(self, make_engine):
        engine = make_engine()
        engine.increment("foo", 2, source="bar")
        engine.increment("foo", 3, source="baz")

        batch = engine.gather()

        assert batch.keys == ["foo"]
        assert sorted(batch.gauges, key=lambda g: g["source"]) == [
            {"name": "foo", "value": 2, "source": "bar"},
            {"name": "foo", "value": 3, "source": "baz"},
        ]
        assert batch.metric_names == ["foo", "foo"]

    def test_name_prefix(self, make_engine):
        """Test the configured prefix is prepended with a dot."""
        engine = make_engine(name_prefix="prefix")
        engine.increment("foo_sum")
        assert engine.gather().metric_names == ["prefix.foo_sum"]

    def test_restricted_to_requested_keys(self, make_engine):
        engine = make_engine()
        engine.measure("a", 1)
        engine.measure("b", 1)
        assert engine.gather("b").keys == ["b"]

    def test_gather_does_not_drain(self, make_engine):
        engine = make_engine()
        engine.measure("a", 1)
        engine.gather()
        assert engine.buffer.count("a") == 1


class TestFlush:
    """Tests for the flush cycle."""

    def test_submits_and_drains(self, make_engine, transport):
        engine = make_engine()
        engine.measure("a", 1)

        result = engine.flush()

        transport.submit.assert_called_once_with([{"name": "a", "value": 1.0, "source": "test"}])
        assert result.submitted
        assert engine.buffer.keys_present() == set()

    def test_empty_batch_short_circuits(self, make_engine, transport):
        """Test nothing is sent when nothing is buffered."""
        engine = make_engine()
        result = engine.flush()

        transport.submit.assert_not_called()
        assert result.submission is None
        assert result.batch.keys == []
        assert not result.submitted

    def test_readiness_cycle(self, make_engine, clock):
        """Test a key is ready, then not, then ready after its period."""
        engine = make_engine(period_ms=10_000)
        engine.measure("a", 1)
        assert engine.find_ready_keys() == ["a"]

        engine.flush()
        engine.measure("a", 2)
        assert engine.find_ready_keys() == []

        clock.advance(9_999)
        assert engine.find_ready_keys() == []
        clock.advance(1)
        assert engine.find_ready_keys() == ["a"]

    def test_unready_keys_keep_samples(self, make_engine, clock, transport):
        """Test keys left out of a flush retain their buffers."""
        engine = make_engine(
            definitions={"fast": {"period_ms": 1000}, "slow": {"period_ms": 5000}}
        )
        engine.measure("fast", 1)
        engine.measure("slow", 1)
        engine.flush()

        engine.measure("fast", 2)
        engine.measure("slow", 2)
        clock.advance(1000)
        result = engine.flush()

        assert result.batch.keys == ["fast"]
        assert engine.buffer.count("fast") == 0
        assert engine.buffer.count("slow") == 1

    def test_successive_cycles_do_not_carry_over(self, make_engine, clock):
        engine = make_engine(period_ms=10_000)
        engine.increment("foo", 2)
        engine.increment("foo", 5)
        first = engine.flush()

        engine.increment("foo", 2)
        engine.increment("foo", 1)
        clock.advance(10_000)
        second = engine.flush()

        assert gauge_values(first) == {("foo", "test"): 7}
        assert gauge_values(second) == {("foo", "test"): 3}

    def test_failed_submission_still_drains_and_advances(self, make_engine, transport):
        """Test failed batches are dropped, not retried."""
        transport.submit.side_effect = lambda gauges: SubmissionResult.failed(
            TransportError("HTTP 500", status_code=500), gauge_count=len(gauges)
        )
        engine = make_engine()
        engine.measure("a", 1)

        result = engine.flush()

        assert result.submission.success is False
        assert engine.buffer.keys_present() == set()
        assert engine.readiness.last_submitted_at("a") is not None

    def test_raising_transport_is_contained(self, make_engine, transport, caplog):
        transport.submit.side_effect = RuntimeError("connection reset")
        engine = make_engine()
        engine.measure("a", 1)

        result = engine.flush()

        assert result.submission.success is False
        assert isinstance(result.submission.error, RuntimeError)
        assert engine.buffer.keys_present() == set()
        assert "connection reset" in caplog.text

    def test_samples_recorded_mid_flight_survive(self, make_engine, transport, clock):
        """Test a sample recorded during submission goes to the next cycle."""
        engine = make_engine(period_ms=10_000)

        def submit(gauges):
            engine.increment("foo", 100)
            return SubmissionResult(success=True, gauge_count=len(gauges))

        transport.submit.side_effect = submit
        engine.increment("foo", 1)

        first = engine.flush()
        assert gauge_values(first) == {("foo", "test"): 1}
        assert engine.buffer.count("foo") == 1

        transport.submit.side_effect = lambda gauges: SubmissionResult(success=True)
        clock.advance(10_000)
        second = engine.flush()
        assert gauge_values(second) == {("foo", "test"): 100}

    def test_samples_recorded_after_clear_mid_flight_survive(self, make_engine, transport, clock):
        """Test clearing a key during submission keeps samples recorded after it."""
        engine = make_engine(period_ms=10_000)

        def submit(gauges):
            engine.clear_keys("foo")
            engine.increment("foo", 100)
            engine.increment("foo", 200)
            return SubmissionResult(success=True, gauge_count=len(gauges))

        transport.submit.side_effect = submit
        engine.increment("foo", 1)

        engine.flush()
        assert engine.buffer.count("foo") == 2

        transport.submit.side_effect = lambda gauges: SubmissionResult(success=True)
        clock.advance(10_000)
        assert gauge_values(engine.flush()) == {("foo", "test"): 300}

    def test_only_one_cycle_in_flight(self, make_engine, transport):
        """Test a flush started during another one does nothing."""
        engine = make_engine()
        nested = []

        def submit(gauges):
            nested.append(engine.flush())
            return SubmissionResult(success=True)

        transport.submit.side_effect = submit
        engine.measure("a", 1)
        engine.flush()

        assert nested == [None]

    def test_logging_option_promotes_to_info(self, make_engine, caplog):
        engine = make_engine(logging=True)
        engine.measure("a", 1)
        with caplog.at_level("INFO", logger="libratobuf"):
            engine.flush()
        assert "Submitted metrics ['a']" in caplog.text

    def test_skip_submit_keeps_batches(self, clock):
        engine = MetricsEngine(skip_submit=True, source="test", clock=clock)
        engine.measure("a", 1)
        result = engine.flush()

        assert result.submitted
        assert engine.transport.batches == [[{"name": "a", "value": 1.0, "source": "test"}]]


class TestMetadata:
    """Tests for metric attribute sync and annotations."""

    def test_sync_metric_attributes(self, make_engine, transport):
        engine = make_engine(
            name_prefix="app",
            definitions={
                "hits": {"type": "counter", "display_name": "Hits"},
                "latency": {"client_agg_function": "quantiles", "quantiles": [0.5, 0.5, 0.9]},
            },
        )

        assert engine.sync_metric_attributes() == 3

        calls = [c.args[0] for c in transport.update_metric.call_args_list]
        assert calls[0] == {
            "display_name": "Hits",
            "name": "app.hits",
            "attributes": {"summarize_function": "sum"},
        }
        assert [c["name"] for c in calls[1:]] == ["app.latency.q50", "app.latency.q90"]
        assert calls[1]["attributes"] == {"summarize_function": "average"}

    def test_sync_metric_attributes_skipped(self, make_engine):
        """Test nothing is synced when submission is skipped."""
        engine = make_engine(skip_submit=True, definitions={"hits": {"type": "counter"}})

        assert engine.sync_metric_attributes() == 0
        assert engine.transport.metric_updates == []

    def test_annotate_defaults_source(self, make_engine, transport):
        engine = make_engine()
        engine.annotate("deploys", "v29", description="shipped")
        transport.create_annotation.assert_called_once_with(
            "deploys", {"title": "v29", "description": "shipped", "source": "test"}
        )


class TestLifecycle:
    """Tests for start() and stop()."""

    def test_start_stop_idempotent(self, make_engine):
        engine = make_engine()
        engine.stop()

        engine.start()
        thread = engine._thread
        engine.start()
        assert engine._thread is thread
        assert engine.is_running

        engine.stop()
        engine.stop()
        assert not engine.is_running

    def test_stop_keeps_buffered_samples(self, make_engine):
        engine = make_engine()
        engine.measure("a", 1)
        engine.start()
        engine.stop()
        engine.start()
        engine.stop()
        assert engine.buffer.count("a") == 1

    def test_loop_flushes(self, make_engine, transport):
        """Test the polling loop runs flush cycles."""
        submitted = threading.Event()

        def submit(gauges):
            submitted.set()
            return SubmissionResult(success=True)

        transport.submit.side_effect = submit
        engine = make_engine()
        engine.polling_interval_ms = 10
        engine.measure("a", 1)

        with engine:
            assert submitted.wait(5)
        assert not engine.is_running

    def test_loop_survives_errors(self, make_engine):
        engine = make_engine()
        engine.polling_interval_ms = 10
        calls = threading.Event()
        failures = MagicMock(side_effect=[RuntimeError("boom"), None, None, None])

        def flush():
            failures()
            if failures.call_count >= 2:
                calls.set()

        engine.flush = flush
        with engine:
            assert calls.wait(5)
