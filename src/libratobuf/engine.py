"""Client-side metric buffering and submission engine.

Producers record samples with measure() and increment(). A background loop
polls at a fixed cadence and runs a flush cycle:

    buffered keys
        | ReadinessTracker.ready_keys()
        v
    ready keys -> snapshot of their samples
        | Aggregator.aggregate()
        v
    gauges ({name, value, source}) -> Transport.submit()
        | (success or failure)
        v
    advance readiness, drain the snapshotted samples

Samples recorded while a submission is in flight are not part of the
snapshot and stay buffered for the next cycle. Failed submissions are not
retried; their samples are dropped.
"""

from __future__ import annotations

import logging
import numbers
import socket
import threading
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Iterable

from libratobuf.aggregator import AggregatedResult, Aggregator, quantile_name
from libratobuf.buffer import SampleBuffer, Samples
from libratobuf.config import Config
from libratobuf.definitions import MetricDefinition, MetricRegistry
from libratobuf.errors import ConfigurationError
from libratobuf.scheduler import ReadinessTracker, now_ms, polling_interval_ms
from libratobuf.transport import (
    LibratoTransport,
    NullTransport,
    SubmissionResult,
    Transport,
)

logger = logging.getLogger(__name__)


@dataclass
class Batch:
    """Gauges gathered for one flush cycle.

    Attributes:
        keys: Keys included in the cycle.
        gauges: Wire-ready {name, value, source} dictionaries.
        samples: The samples the gauges were reduced from.
    """

    keys: list[str] = field(default_factory=list)
    gauges: list[dict[str, Any]] = field(default_factory=list)
    samples: Samples = field(default_factory=dict)

    @property
    def metric_names(self) -> list[str]:
        """Names of the gathered gauges."""
        return [g["name"] for g in self.gauges]


@dataclass
class FlushResult:
    """Outcome of one flush cycle.

    Attributes:
        batch: What was gathered.
        submission: The transport outcome, or None if nothing was sent.
    """

    batch: Batch
    submission: SubmissionResult | None = None

    @property
    def submitted(self) -> bool:
        """Whether the backend accepted a non-empty batch."""
        return self.submission is not None and self.submission.success


def _as_key_list(keys: str | Iterable[str]) -> list[str]:
    if isinstance(keys, str):
        return [keys]
    return list(keys)


class MetricsEngine:
    """Buffers samples and submits their aggregates on per-key schedules.

    Each engine owns its buffer, registry and readiness state, so several
    engines can run side by side.
    """

    def __init__(
        self,
        config: Config | None = None,
        transport: Transport | None = None,
        clock: Callable[[], float] = now_ms,
        **options: Any,
    ):
        """Initialize the engine.

        Args:
            config: Engine configuration. Defaults to Config().
            transport: Backend transport. Defaults to a LibratoTransport
                built from the config credentials. Ignored when the config
                sets skip_submit.
            clock: Returns the current time in milliseconds.
            **options: Config fields overriding those of config.

        Raises:
            ConfigurationError: If a definition is invalid, or credentials
                are missing for the default transport.
        """
        if config is None:
            config = Config(**options)
        elif options:
            config = replace(config, **options)
        self.config = config
        self.clock = clock

        self.registry = MetricRegistry(config.definitions, default_period_ms=config.period_ms)
        self.buffer = SampleBuffer(config.blacklist)
        self.aggregator = Aggregator(self.registry)
        self.readiness = ReadinessTracker(self.registry, clock=clock)
        self.polling_interval_ms = polling_interval_ms(config.period_ms)

        if config.skip_submit:
            transport = NullTransport()
        elif transport is None:
            transport = LibratoTransport(
                config.email,
                config.token,
                api_url=config.api_url,
                timeout=config.timeout,
                user_agent=config.user_agent,
            )
        self.transport = transport

        self._flush_lock = threading.Lock()
        self._stop_event: threading.Event | None = None
        self._thread: threading.Thread | None = None

    # Recording

    def measure(self, key: str, value: float, source: str | None = None) -> bool:
        """Record a value for an averaging-style metric.

        Undeclared keys are registered with the default definition.

        Returns:
            True if the value was buffered, False if the key is blacklisted.
        """
        if self.buffer.is_blacklisted(key):
            return False
        definition = self.registry.auto_register(key)
        return self._record(definition, value, source)

    def increment(self, key: str, value: float | None = None, source: str | None = None) -> bool:
        """Record a value (default 1) for a counter-style metric.

        Undeclared keys are registered with sum aggregation.

        Returns:
            True if the value was buffered, False if the key is blacklisted.

        Raises:
            ConfigurationError: If the key is declared with a client
                aggregation function other than sum.
        """
        if self.buffer.is_blacklisted(key):
            return False

        definition = self.registry.get(key) or self.registry.auto_register(key, "sum")
        if definition.client_agg_function != "sum":
            raise ConfigurationError(
                f"attempted to increment metric '{key}' with agg function "
                f"{definition.client_agg_function}"
            )
        return self._record(definition, 1 if value is None else value, source)

    def _record(self, definition: MetricDefinition, value: float, source: str | None) -> bool:
        if isinstance(value, bool) or not isinstance(value, numbers.Real):
            raise TypeError(
                f"Metric '{definition.key}' value must be a number, got {type(value).__name__}"
            )
        source = source or definition.source or self.default_source
        return self.buffer.record(definition.key, value, source)

    @property
    def default_source(self) -> str:
        """Source tag applied when neither the call nor the definition sets one."""
        return self.config.source or socket.gethostname()

    # Aggregation

    def find_ready_keys(self) -> list[str]:
        """Get the buffered keys whose period has elapsed."""
        return self.readiness.ready_keys(sorted(self.buffer.keys_present()))

    def aggregate_keys(self, keys: str | Iterable[str]) -> dict[str, dict[str, AggregatedResult]]:
        """Aggregate the live buffer for some keys, ignoring readiness.

        Returns:
            Mapping of output metric name to source to result.
        """
        return self.aggregator.aggregate(self.buffer.snapshot(_as_key_list(keys)))

    def aggregate_all(self) -> dict[str, dict[str, AggregatedResult]]:
        """Aggregate every buffered key, ignoring readiness."""
        return self.aggregator.aggregate(self.buffer.snapshot())

    def clear_keys(self, keys: str | Iterable[str]) -> None:
        """Discard every buffered sample of some keys."""
        self.buffer.drain(_as_key_list(keys))

    def metric_name(self, name: str) -> str:
        """Apply the configured name prefix."""
        if self.config.name_prefix:
            return f"{self.config.name_prefix}.{name}"
        return name

    def gather(self, keys: str | Iterable[str] | None = None) -> Batch:
        """Gather the gauges of ready keys without submitting them.

        Args:
            keys: Restrict the batch to these keys. Defaults to all.

        Returns:
            The batch, with the sample snapshot it was built from.
        """
        ready = self.find_ready_keys()
        if keys is not None:
            wanted = set(_as_key_list(keys))
            ready = [key for key in ready if key in wanted]

        samples = self.buffer.snapshot(ready)
        by_metric_by_source = self.aggregator.aggregate(samples)

        gauges = [
            {
                "name": self.metric_name(metric_name),
                "value": result.value,
                "source": source,
            }
            for metric_name, by_source in by_metric_by_source.items()
            for source, result in by_source.items()
        ]
        return Batch(keys=ready, gauges=gauges, samples=samples)

    # Submission

    def flush(self) -> FlushResult | None:
        """Run one flush cycle.

        Only one cycle runs at a time; a call made while another cycle is
        in flight returns None without doing anything. Readiness is
        advanced and the submitted samples drained whether or not the
        transport succeeded.

        Returns:
            The cycle outcome, or None if another cycle was in flight.
        """
        if not self._flush_lock.acquire(blocking=False):
            logger.debug("Flush already in progress, skipping")
            return None

        try:
            started_at = self.clock()
            batch = self.gather()
            try:
                submission = self._submit(batch)
            finally:
                self.readiness.advance(batch.keys, now=started_at)
                self.buffer.drain(batch.keys, snapshot=batch.samples)
            return FlushResult(batch=batch, submission=submission)
        finally:
            self._flush_lock.release()

    def _submit(self, batch: Batch) -> SubmissionResult | None:
        if not batch.gauges:
            return None

        self._log("Submitting gauges %s", batch.metric_names)
        try:
            result = self.transport.submit(batch.gauges)
        except Exception as e:
            # Transports other than ours may raise instead of settling
            result = SubmissionResult.failed(e, gauge_count=len(batch.gauges))

        if result.success:
            if self.config.logging_verbose and result.response is not None:
                logger.info("Response: %s", result.response)
            self._log("Submitted metrics %s", batch.metric_names)
        else:
            logger.error("Submission error: %s", result.describe_error())
        return result

    def _log(self, msg: str, *args: Any) -> None:
        level = logging.INFO if self.config.logging else logging.DEBUG
        logger.log(level, msg, *args)

    # Backend metadata

    def sync_metric_attributes(self) -> int:
        """Push declared definitions' attributes to the backend.

        Each registered metric (every quantile output, for quantile
        metrics) is updated with its metric properties and its server
        aggregation function as summarize_function.

        Returns:
            Number of metrics updated. Zero when submission is skipped.

        Raises:
            TransportError: If an update is rejected.
        """
        if self.config.skip_submit:
            return 0

        updated = 0
        for key, definition in self.registry.items():
            if definition.client_agg_function == "quantiles":
                names = [quantile_name(key, q) for q in definition.quantiles]
            else:
                names = [key]

            properties = dict(definition.metric_properties)
            attributes = dict(properties.pop("attributes", {}))
            attributes["summarize_function"] = definition.server_agg_function

            for name in dict.fromkeys(names):
                self.transport.update_metric(
                    {**properties, "name": self.metric_name(name), "attributes": attributes}
                )
                updated += 1
        return updated

    def annotate(self, stream: str, title: str, **attributes: Any) -> Any:
        """Create an annotation event on a stream.

        Raises:
            DataError: If stream or title is empty.
            TransportError: If the backend rejects the annotation.
        """
        attributes = {"title": title, **attributes}
        if self.config.source and "source" not in attributes:
            attributes["source"] = self.config.source
        return self.transport.create_annotation(stream, attributes)

    # Lifecycle

    @property
    def is_running(self) -> bool:
        """Whether the polling loop is active."""
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the polling loop in a background thread.

        Does nothing if the loop is already running.
        """
        if self.is_running:
            return

        self._stop_event = threading.Event()
        self._thread = threading.Thread(
            target=self._run_loop,
            args=(self._stop_event,),
            name="libratobuf-flush",
            daemon=True,
        )
        self._thread.start()
        logger.debug("Polling every %sms", self.polling_interval_ms)

    def stop(self) -> None:
        """Stop the polling loop.

        Buffered samples are kept; a later start() resumes from them.
        Calling stop() on a stopped engine does nothing.
        """
        if self._thread is None:
            return

        self._stop_event.set()
        if self._thread is not threading.current_thread():
            self._thread.join()
        self._thread = None
        self._stop_event = None

    def close(self) -> None:
        """Stop the loop and release the transport."""
        self.stop()
        close = getattr(self.transport, "close", None)
        if close is not None:
            close()

    def __enter__(self) -> MetricsEngine:
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.stop()

    def _run_loop(self, stop_event: threading.Event) -> None:
        interval = self.polling_interval_ms / 1000
        while not stop_event.wait(interval):
            try:
                self.flush()
            except Exception as e:
                logger.error(f"Error in flush cycle: {e}", exc_info=True)
