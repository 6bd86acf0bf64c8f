"""libratobuf - Client-side metric buffering and aggregation for Librato.

Samples are buffered per metric key and source, reduced locally with each
key's aggregation function, and submitted to the Librato metrics API on
independent per-key schedules.
"""

__version__ = "0.1.0"

from libratobuf.aggregator import AggregatedResult, Aggregator
from libratobuf.buffer import Sample, SampleBuffer
from libratobuf.config import Config
from libratobuf.definitions import MetricDefinition, MetricRegistry
from libratobuf.engine import Batch, FlushResult, MetricsEngine
from libratobuf.errors import ConfigurationError, DataError, LibratoBufError, TransportError
from libratobuf.scheduler import ReadinessTracker
from libratobuf.transport import LibratoTransport, NullTransport, SubmissionResult, Transport

__all__ = [
    # Engine
    "MetricsEngine",
    "Batch",
    "FlushResult",
    "Config",
    # Components
    "MetricDefinition",
    "MetricRegistry",
    "Sample",
    "SampleBuffer",
    "AggregatedResult",
    "Aggregator",
    "ReadinessTracker",
    # Transport
    "Transport",
    "LibratoTransport",
    "NullTransport",
    "SubmissionResult",
    # Errors
    "LibratoBufError",
    "ConfigurationError",
    "TransportError",
    "DataError",
]
