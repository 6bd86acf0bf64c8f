"""Transport to the Librato metrics API.

The engine talks to its backend through the Transport protocol. submit()
never raises: every attempt settles into a SubmissionResult carrying either
the response or the error.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Protocol, Sequence

import httpx

from libratobuf.errors import ConfigurationError, DataError, TransportError

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://metrics-api.librato.com/v1"
DEFAULT_TIMEOUT = 10.0  # seconds
DEFAULT_USER_AGENT = "libratobuf"


@dataclass
class SubmissionResult:
    """Outcome of one submission attempt.

    Attributes:
        success: Whether the backend accepted the batch.
        gauge_count: Number of gauges in the batch.
        status_code: HTTP status, if a response was received.
        response: Decoded response body, if any.
        error: The failure, if the attempt failed.
        duration_ms: Time spent in the attempt.
    """

    success: bool
    gauge_count: int = 0
    status_code: int | None = None
    response: Any = None
    error: Exception | None = None
    duration_ms: int | None = None

    @classmethod
    def failed(cls, error: Exception, gauge_count: int = 0) -> SubmissionResult:
        """Build a failed result from an exception."""
        status_code = error.status_code if isinstance(error, TransportError) else None
        return cls(
            success=False,
            gauge_count=gauge_count,
            status_code=status_code,
            error=error,
        )

    def describe_error(self) -> str:
        """Render the failure for logging."""
        if self.error is None:
            return ""
        if isinstance(self.error, TransportError):
            return self.error.describe()
        return f"{type(self.error).__name__}: {self.error}"


class Transport(Protocol):
    """Interface the engine uses to reach the metrics backend."""

    def submit(self, gauges: Sequence[dict[str, Any]]) -> SubmissionResult:
        ...

    def update_metric(self, attributes: dict[str, Any]) -> Any:
        ...

    def create_annotation(self, stream: str, attributes: dict[str, Any]) -> Any:
        ...


def validate_gauges(gauges: Sequence[dict[str, Any]]) -> None:
    """Check that every gauge has a name and a value.

    Raises:
        DataError: If a gauge is malformed.
    """
    for i, gauge in enumerate(gauges):
        if not gauge.get("name"):
            raise DataError(f"Gauge at index {i} must have a name")
        if gauge.get("value") is None:
            raise DataError(f"Gauge '{gauge['name']}' must have a value")


def validate_metric_update(attributes: dict[str, Any]) -> None:
    """Check that a metric update names its metric.

    Raises:
        DataError: If attributes has no name.
    """
    if not attributes.get("name"):
        raise DataError("Librato metrics must have a name")


def validate_annotation(stream: str, attributes: dict[str, Any]) -> None:
    """Check that an annotation has a stream and a title.

    Raises:
        DataError: If stream or title is missing.
    """
    if not stream:
        raise DataError("Annotations must have a stream name")
    if not attributes.get("title"):
        raise DataError("Annotations must have a title")


def _decode_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


class LibratoTransport:
    """HTTP transport for the Librato metrics API."""

    def __init__(
        self,
        email: str | None,
        token: str | None,
        api_url: str = DEFAULT_API_URL,
        timeout: float = DEFAULT_TIMEOUT,
        user_agent: str = DEFAULT_USER_AGENT,
        client: httpx.Client | None = None,
    ):
        """Initialize the transport.

        Args:
            email: Account email used for basic auth.
            token: API token used for basic auth.
            api_url: Base URL of the API.
            timeout: Request timeout in seconds.
            user_agent: User-Agent header value.
            client: Pre-built httpx client (mainly for tests).

        Raises:
            ConfigurationError: If email or token is missing.
        """
        if not email or not token:
            raise ConfigurationError(
                "Librato credentials missing: both email and token are required "
                "(set them in config or LIBRATO_EMAIL / LIBRATO_TOKEN)"
            )

        self.api_url = api_url.rstrip("/")
        self._client = client or httpx.Client(timeout=timeout)
        self._auth = httpx.BasicAuth(email, token)
        self._headers = {"User-Agent": user_agent}

    def close(self) -> None:
        """Close the underlying HTTP client."""
        self._client.close()

    def __enter__(self) -> LibratoTransport:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def _request(self, method: str, path: str, payload: dict[str, Any]) -> httpx.Response:
        url = f"{self.api_url}/{path.lstrip('/')}"
        logger.debug(f"{method} {url}")
        try:
            response = self._client.request(
                method, url, json=payload, auth=self._auth, headers=self._headers
            )
        except httpx.HTTPError as e:
            raise TransportError(f"{method} {url} failed: {e}") from e

        if response.status_code >= 400:
            raise TransportError(
                f"{method} {url} returned HTTP {response.status_code}",
                status_code=response.status_code,
                detail=_decode_body(response),
            )
        return response

    def post_gauges(self, gauges: Sequence[dict[str, Any]]) -> httpx.Response:
        """POST a batch of gauges.

        Raises:
            DataError: If a gauge is malformed.
            TransportError: If the request fails or is rejected.
        """
        validate_gauges(gauges)
        return self._request("POST", "metrics", {"gauges": list(gauges)})

    def submit(self, gauges: Sequence[dict[str, Any]]) -> SubmissionResult:
        """Submit a batch of gauges, settling into a result.

        An empty batch succeeds without a request.
        """
        if not gauges:
            return SubmissionResult(success=True)

        start = time.monotonic()
        try:
            response = self.post_gauges(gauges)
        except (TransportError, DataError) as e:
            result = SubmissionResult.failed(e, gauge_count=len(gauges))
        else:
            result = SubmissionResult(
                success=True,
                gauge_count=len(gauges),
                status_code=response.status_code,
                response=_decode_body(response),
            )
        result.duration_ms = int((time.monotonic() - start) * 1000)
        return result

    def update_metric(self, attributes: dict[str, Any]) -> httpx.Response:
        """Update a metric's attributes.

        Args:
            attributes: Metric fields; must include "name".

        Raises:
            DataError: If attributes has no name.
            TransportError: If the request fails or is rejected.
        """
        validate_metric_update(attributes)
        return self._request("PUT", f"metrics/{attributes['name']}", attributes)

    def create_annotation(self, stream: str, attributes: dict[str, Any]) -> httpx.Response:
        """Create an annotation event on a stream.

        Args:
            stream: Annotation stream name.
            attributes: Event fields (title, description, source,
                start_time, end_time, links); must include "title".

        Raises:
            DataError: If stream or title is missing.
            TransportError: If the request fails or is rejected.
        """
        validate_annotation(stream, attributes)
        return self._request("POST", f"annotations/{stream}", attributes)


@dataclass
class NullTransport:
    """Transport that validates payloads but sends nothing.

    Used when submission is skipped. Batches handed to it are kept in
    memory for inspection.
    """

    batches: list[list[dict[str, Any]]] = field(default_factory=list)
    metric_updates: list[dict[str, Any]] = field(default_factory=list)
    annotations: list[tuple[str, dict[str, Any]]] = field(default_factory=list)

    def submit(self, gauges: Sequence[dict[str, Any]]) -> SubmissionResult:
        if not gauges:
            return SubmissionResult(success=True)
        self.batches.append(list(gauges))
        return SubmissionResult(success=True, gauge_count=len(gauges))

    def update_metric(self, attributes: dict[str, Any]) -> None:
        validate_metric_update(attributes)
        self.metric_updates.append(dict(attributes))

    def create_annotation(self, stream: str, attributes: dict[str, Any]) -> None:
        validate_annotation(stream, attributes)
        self.annotations.append((stream, dict(attributes)))

    def close(self) -> None:
        pass
