"""Reduction of buffered samples into submittable values.

Each (key, source) sample set is reduced independently with the key's client
aggregation function. Scalar functions emit one value named after the key;
the quantiles function emits one value per configured quantile, named
"{key}.q{percent}".

Standard deviation is the population standard deviation (numpy.std with
ddof=0). Quantiles are read from the sorted values at rank n*q: a fractional
rank rounds up to the next sample. A whole rank averages the two
neighbouring samples when n is even and takes the sample above when n is
odd.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Mapping, Sequence

import numpy as np

from libratobuf.definitions import MetricDefinition

if TYPE_CHECKING:
    from libratobuf.buffer import Sample, Samples
    from libratobuf.definitions import MetricRegistry

SCALAR_FUNCTIONS: dict[str, Callable[[np.ndarray], float]] = {
    "sum": np.sum,
    "mean": np.mean,
    "median": np.median,
    "min": np.min,
    "max": np.max,
    "std_dev": np.std,
}


def quantile_sorted(values: np.ndarray, quantile: float) -> float:
    """Compute one quantile of already sorted values.

    Args:
        values: Non-empty sorted values.
        quantile: Quantile in [0, 1].
    """
    n = len(values)
    if quantile == 1:
        return float(values[-1])
    if quantile == 0:
        return float(values[0])

    rank = n * quantile
    if rank % 1 != 0:
        return float(values[math.ceil(rank) - 1])
    rank = int(rank)
    if n % 2 == 0:
        return float((values[rank - 1] + values[rank]) / 2)
    return float(values[rank])


@dataclass
class AggregatedResult:
    """One reduced value ready for submission.

    Attributes:
        metric_name: Output name (the key, or "{key}.qNN" for quantiles).
        value: The reduced value.
        definition: The definition the value was produced under.
    """

    metric_name: str
    value: float
    definition: MetricDefinition

    @property
    def key(self) -> str:
        """The metric key the value was reduced from."""
        return self.definition.key


def quantile_name(key: str, quantile: float) -> str:
    """Build the output name for a quantile, e.g. "latency.q95"."""
    # Round half up so 0.125 names q13
    return f"{key}.q{int(math.floor(quantile * 100 + 0.5))}"


def aggregate_samples(
    samples: Sequence[Sample] | Sequence[float],
    definition: MetricDefinition,
) -> list[AggregatedResult]:
    """Reduce one (key, source) sample set.

    Args:
        samples: Samples or raw values, in recording order.
        definition: The definition governing the key.

    Returns:
        The reduced values. Empty if there are no samples, or if the
        quantiles function is configured with an empty quantile list.
    """
    if len(samples) == 0:
        return []

    values = np.asarray(
        [s if isinstance(s, (int, float)) else s.value for s in samples],
        dtype=float,
    )

    if definition.client_agg_function == "quantiles":
        quantiles = list(definition.quantiles)
        if not quantiles:
            return []

        ordered = np.sort(values)
        computed = [quantile_sorted(ordered, q) for q in quantiles]
        return [
            AggregatedResult(
                metric_name=quantile_name(definition.key, q),
                value=float(v),
                definition=definition,
            )
            for q, v in zip(quantiles, computed)
        ]

    fn = SCALAR_FUNCTIONS[definition.client_agg_function]
    return [
        AggregatedResult(
            metric_name=definition.key,
            value=float(fn(values)),
            definition=definition,
        )
    ]


class Aggregator:
    """Reduces buffered samples using the definitions in a registry."""

    def __init__(self, registry: MetricRegistry):
        self.registry = registry

    def reduce(
        self, key: str, samples_by_source: Mapping[str, Sequence[Sample]]
    ) -> dict[str, list[AggregatedResult]]:
        """Reduce every source of one key independently.

        Args:
            key: The metric key.
            samples_by_source: Buffered samples for the key, per source.

        Returns:
            Mapping of source to its reduced values. Sources without
            samples are omitted.
        """
        definition = self.registry.resolve(key)
        results: dict[str, list[AggregatedResult]] = {}
        for source, samples in samples_by_source.items():
            reduced = aggregate_samples(samples, definition)
            if reduced:
                results[source] = reduced
        return results

    def aggregate(self, samples: Samples) -> dict[str, dict[str, AggregatedResult]]:
        """Reduce several keys, indexed by output name then source.

        A quantile list with duplicates yields one entry per distinct
        output name.

        Args:
            samples: Buffered samples, per key then per source.

        Returns:
            Mapping of output metric name to source to result.
        """
        by_metric_by_source: dict[str, dict[str, AggregatedResult]] = {}
        for key, samples_by_source in samples.items():
            for source, results in self.reduce(key, samples_by_source).items():
                for result in results:
                    by_metric_by_source.setdefault(result.metric_name, {})[source] = result
        return by_metric_by_source
