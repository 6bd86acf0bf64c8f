"""Metric definitions and the registry that resolves them.

A definition declares how samples buffered under a key are reduced on the
client before submission, and how the backend should summarize the submitted
points over time.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field, replace
from typing import Any, Iterator, Mapping

from libratobuf.errors import ConfigurationError

DEFAULT_PERIOD_MS = 60000
DEFAULT_QUANTILES = (0.0, 0.25, 0.5, 0.75, 1.0)

# Reductions applied locally before submission
CLIENT_AGG_FUNCTIONS = frozenset({
    "sum",
    "mean",
    "median",
    "min",
    "max",
    "std_dev",
    "quantiles",
})

# Summarize functions understood by the backend
SERVER_AGG_FUNCTIONS = frozenset({
    "sum",
    "average",
    "count",
    "min",
    "max",
})

SERVER_FROM_CLIENT = {
    "sum": "sum",
    "mean": "average",
    "median": "average",
    "min": "min",
    "max": "max",
    "std_dev": "average",
    "quantiles": "average",
}

CLIENT_FROM_SERVER = {
    "sum": "sum",
    "average": "mean",
    "count": "sum",
    "min": "min",
    "max": "max",
}

# Key under which the definition for undeclared metrics is configured
DEFAULT_DEFINITION_KEY = "__default"

_KNOWN_FIELDS = frozenset({
    "key",
    "type",
    "client_agg_function",
    "server_agg_function",
    "period_ms",
    "quantiles",
    "source",
    "metric_properties",
})


@dataclass(frozen=True)
class MetricDefinition:
    """Declared aggregation behaviour for one metric key.

    Attributes:
        key: The metric name samples are buffered under.
        client_agg_function: Local reduction (sum, mean, median, min, max,
            std_dev or quantiles).
        server_agg_function: Backend summarize function (sum, average,
            count, min or max).
        period_ms: Minimum milliseconds between two submissions of the key.
        quantiles: Quantiles emitted when client_agg_function is quantiles.
        source: Source tag overriding the engine default for this key.
        metric_properties: Opaque attributes forwarded to the backend.
        type: Optional declared type. "counter" forces sum aggregation.
    """

    key: str
    client_agg_function: str
    server_agg_function: str
    period_ms: int = DEFAULT_PERIOD_MS
    quantiles: tuple[float, ...] = DEFAULT_QUANTILES
    source: str | None = None
    metric_properties: dict[str, Any] = field(default_factory=dict)
    type: str | None = None

    @classmethod
    def from_dict(
        cls,
        key: str,
        data: Mapping[str, Any],
        default_period_ms: int = DEFAULT_PERIOD_MS,
        default_client_agg_function: str = "mean",
    ) -> MetricDefinition:
        """Build a definition, deriving the fields that were left out.

        Args:
            key: The metric key.
            data: Declared fields. Unknown fields become metric properties.
            default_period_ms: Period used when none is declared.
            default_client_agg_function: Client function used when neither
                aggregation function is declared.

        Returns:
            A validated MetricDefinition.

        Raises:
            ConfigurationError: If an aggregation function, period or
                quantile list is invalid.
        """
        metric_type = data.get("type")
        client_fn = data.get("client_agg_function")
        server_fn = data.get("server_agg_function")

        if metric_type == "counter":
            client_fn = "sum"
            server_fn = "sum"

        if client_fn is None and server_fn is None:
            client_fn = default_client_agg_function

        if server_fn is None:
            server_fn = SERVER_FROM_CLIENT.get(client_fn, client_fn)
        if client_fn is None:
            client_fn = CLIENT_FROM_SERVER.get(server_fn, server_fn)

        if client_fn not in CLIENT_AGG_FUNCTIONS:
            raise ConfigurationError(
                f"Metric '{key}' has invalid client aggregation function "
                f"'{client_fn}'. Valid functions are: "
                f"{', '.join(sorted(CLIENT_AGG_FUNCTIONS))}"
            )
        if server_fn not in SERVER_AGG_FUNCTIONS:
            raise ConfigurationError(
                f"Metric '{key}' has invalid server aggregation function "
                f"'{server_fn}'. Valid functions are: "
                f"{', '.join(sorted(SERVER_AGG_FUNCTIONS))}"
            )

        period_ms = data.get("period_ms")
        if period_ms is None:
            period_ms = default_period_ms
        if isinstance(period_ms, bool) or not isinstance(period_ms, int) or period_ms <= 0:
            raise ConfigurationError(
                f"Metric '{key}' has invalid period_ms {period_ms!r}: "
                "expected a positive integer"
            )

        quantiles = data.get("quantiles")
        if quantiles is None:
            quantiles = DEFAULT_QUANTILES
        quantiles = _validate_quantiles(key, quantiles)

        # Anything we don't recognise is passed through to the backend
        properties = dict(data.get("metric_properties") or {})
        properties.update({k: v for k, v in data.items() if k not in _KNOWN_FIELDS})

        return cls(
            key=key,
            client_agg_function=client_fn,
            server_agg_function=server_fn,
            period_ms=period_ms,
            quantiles=quantiles,
            source=data.get("source"),
            metric_properties=properties,
            type=metric_type,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to a plain dictionary, omitting unset optional fields."""
        data: dict[str, Any] = {
            "key": self.key,
            "client_agg_function": self.client_agg_function,
            "server_agg_function": self.server_agg_function,
            "period_ms": self.period_ms,
        }
        if self.client_agg_function == "quantiles":
            data["quantiles"] = list(self.quantiles)
        if self.source is not None:
            data["source"] = self.source
        if self.metric_properties:
            data["metric_properties"] = dict(self.metric_properties)
        if self.type is not None:
            data["type"] = self.type
        return data


def _validate_quantiles(key: str, quantiles: Any) -> tuple[float, ...]:
    if isinstance(quantiles, (str, bytes)) or not hasattr(quantiles, "__iter__"):
        raise ConfigurationError(
            f"Metric '{key}' has invalid quantiles: expected a list of numbers"
        )

    result = []
    for q in quantiles:
        if isinstance(q, bool) or not isinstance(q, (int, float)) or not 0 <= q <= 1:
            raise ConfigurationError(
                f"Metric '{key}' has invalid quantile {q!r}: expected a number in [0, 1]"
            )
        result.append(float(q))
    return tuple(result)


class MetricRegistry:
    """Holds the declared metric definitions for one engine.

    Declared definitions are validated once, at construction. Keys that
    were never declared resolve to the default definition stamped with the
    requested key; they are only stored through auto_register().
    """

    def __init__(
        self,
        definitions: Mapping[str, Any] | None = None,
        default_period_ms: int = DEFAULT_PERIOD_MS,
    ):
        """Initialize the registry.

        Args:
            definitions: Mapping of key to a MetricDefinition or a dict of
                declared fields. The "__default" key configures the
                definition used for undeclared metrics.
            default_period_ms: Engine-wide default period.

        Raises:
            ConfigurationError: If any declared definition is invalid.
        """
        self.default_period_ms = default_period_ms
        self._lock = threading.Lock()
        self._definitions: dict[str, MetricDefinition] = {}

        for key, data in (definitions or {}).items():
            if isinstance(data, MetricDefinition):
                data = data.to_dict()
            self._definitions[key] = MetricDefinition.from_dict(
                key, data, default_period_ms=default_period_ms
            )

        default = self._definitions.pop(DEFAULT_DEFINITION_KEY, None)
        if default is None:
            default = MetricDefinition.from_dict(
                DEFAULT_DEFINITION_KEY,
                {"client_agg_function": "mean"},
                default_period_ms=default_period_ms,
            )
        self.default_definition = default

    def get(self, key: str) -> MetricDefinition | None:
        """Get the declared (or auto-registered) definition for a key."""
        return self._definitions.get(key)

    def resolve(self, key: str) -> MetricDefinition:
        """Resolve the definition that governs a key.

        Args:
            key: The metric key.

        Returns:
            The registered definition, or the default definition stamped
            with the key. The synthesized definition is not stored.
        """
        definition = self._definitions.get(key)
        if definition is None:
            definition = replace(self.default_definition, key=key)
        return definition

    def auto_register(
        self, key: str, client_agg_function: str | None = None
    ) -> MetricDefinition:
        """Register a definition for a key on first use.

        Already registered keys are returned untouched.

        Args:
            key: The metric key.
            client_agg_function: Client function for the new definition.
                If None, the default definition is used as-is.

        Returns:
            The definition now registered for the key.
        """
        with self._lock:
            definition = self._definitions.get(key)
            if definition is not None:
                return definition

            if client_agg_function is None:
                definition = replace(self.default_definition, key=key)
            else:
                definition = MetricDefinition.from_dict(
                    key,
                    {
                        "client_agg_function": client_agg_function,
                        "period_ms": self.default_definition.period_ms,
                        "source": self.default_definition.source,
                    },
                    default_period_ms=self.default_period_ms,
                )
            self._definitions[key] = definition
            return definition

    def keys(self) -> list[str]:
        """Get all registered keys."""
        return list(self._definitions)

    def items(self) -> list[tuple[str, MetricDefinition]]:
        """Get all registered (key, definition) pairs."""
        return list(self._definitions.items())

    def __contains__(self, key: object) -> bool:
        return key in self._definitions

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._definitions))

    def __len__(self) -> int:
        return len(self._definitions)
