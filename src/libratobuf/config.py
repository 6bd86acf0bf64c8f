"""Configuration parsing for libratobuf.

Parses .libratobuf/config.toml files for engine options and metric
definitions. Configuration can also be built directly in code.
"""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from libratobuf.definitions import DEFAULT_PERIOD_MS
from libratobuf.errors import ConfigurationError
from libratobuf.transport import DEFAULT_API_URL, DEFAULT_TIMEOUT, DEFAULT_USER_AGENT

CONFIG_DIR = ".libratobuf"
CONFIG_FILE = "config.toml"

# Environment variables consulted when a value is not configured
ENV_EMAIL = "LIBRATO_EMAIL"
ENV_TOKEN = "LIBRATO_TOKEN"
ENV_SOURCE = "LIBRATO_SOURCE"


@dataclass
class Config:
    """Engine configuration.

    Attributes:
        source: Default source tag for samples recorded without one.
        definitions: Metric definitions keyed by metric key. The
            "__default" key configures the definition of undeclared metrics.
        period_ms: Default flush period in milliseconds.
        name_prefix: Prepended as "{prefix}." to every submitted name.
        blacklist: Regular expressions; matching keys are not recorded.
        logging: Log submission summaries at INFO instead of DEBUG.
        logging_verbose: Also log backend response bodies.
        skip_submit: Never contact the backend.
        email: Account email for the HTTP transport.
        token: API token for the HTTP transport.
        api_url: Base URL of the metrics API.
        timeout: Transport timeout in seconds.
        user_agent: User-Agent sent with every request.
        config_path: File the configuration was loaded from, if any.
    """

    source: str | None = None
    definitions: dict[str, Any] = field(default_factory=dict)
    period_ms: int = DEFAULT_PERIOD_MS
    name_prefix: str | None = None
    blacklist: list[str] = field(default_factory=list)
    logging: bool = False
    logging_verbose: bool = False
    skip_submit: bool = False
    email: str | None = None
    token: str | None = None
    api_url: str = DEFAULT_API_URL
    timeout: float = DEFAULT_TIMEOUT
    user_agent: str = DEFAULT_USER_AGENT
    config_path: Path | None = None

    def __post_init__(self) -> None:
        if self.source is None:
            self.source = os.environ.get(ENV_SOURCE)
        if self.email is None:
            self.email = os.environ.get(ENV_EMAIL)
        if self.token is None:
            self.token = os.environ.get(ENV_TOKEN)

        if isinstance(self.period_ms, bool) or not isinstance(self.period_ms, int) or self.period_ms <= 0:
            raise ConfigurationError(
                f"Invalid period_ms {self.period_ms!r}: expected a positive integer"
            )
        if isinstance(self.blacklist, str) or not isinstance(self.blacklist, (list, tuple)):
            raise ConfigurationError("Invalid blacklist: expected a list of patterns")
        if not isinstance(self.definitions, dict):
            raise ConfigurationError("Invalid definitions: expected a table of metrics")
        if (
            isinstance(self.timeout, bool)
            or not isinstance(self.timeout, (int, float))
            or self.timeout <= 0
        ):
            raise ConfigurationError(f"Invalid timeout {self.timeout!r}: expected seconds > 0")

    @classmethod
    def load(cls, path: Path | None = None) -> Config:
        """Load configuration from a file.

        Args:
            path: Path to config file. If None, searches for
                  .libratobuf/config.toml in current directory and parents.

        Returns:
            Loaded configuration.

        Raises:
            FileNotFoundError: If no config file found.
            ConfigurationError: If config file is invalid.
        """
        if path is None:
            path = cls._find_config()

        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        try:
            with open(path, "rb") as f:
                data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigurationError(f"Invalid TOML in {path}: {e}") from e

        return cls.from_dict(data, path)

    @classmethod
    def load_or_default(cls, path: Path | None = None) -> Config:
        """Load configuration or return default if not found."""
        try:
            return cls.load(path)
        except FileNotFoundError:
            return cls()

    @classmethod
    def _find_config(cls) -> Path:
        """Find config file by searching current directory and parents."""
        cwd = Path.cwd()
        for parent in [cwd, *cwd.parents]:
            config_path = parent / CONFIG_DIR / CONFIG_FILE
            if config_path.exists():
                return config_path

        # Return expected path even if it doesn't exist
        return cwd / CONFIG_DIR / CONFIG_FILE

    @classmethod
    def from_dict(cls, data: dict[str, Any], path: Path | None = None) -> Config:
        """Create a Config from a parsed TOML document.

        Args:
            data: Document with an optional [librato] table of options and
                an optional [definitions] table of metric definitions.
            path: Where the document was read from.

        Returns:
            A Config instance.

        Raises:
            ConfigurationError: If a value is invalid.
        """
        options = data.get("librato", {})
        definitions = data.get("definitions", {})

        for key, definition in definitions.items():
            if not isinstance(definition, dict):
                raise ConfigurationError(
                    f"Definition '{key}' must be a table, got {type(definition).__name__}"
                )

        return cls(
            source=options.get("source"),
            definitions=dict(definitions),
            period_ms=options.get("period_ms", DEFAULT_PERIOD_MS),
            name_prefix=options.get("name_prefix"),
            blacklist=options.get("blacklist", []),
            logging=options.get("logging", False),
            logging_verbose=options.get("logging_verbose", False),
            skip_submit=options.get("skip_submit", False),
            email=options.get("email"),
            token=options.get("token"),
            api_url=options.get("api_url", DEFAULT_API_URL),
            timeout=options.get("timeout", DEFAULT_TIMEOUT),
            user_agent=options.get("user_agent", DEFAULT_USER_AGENT),
            config_path=path,
        )
