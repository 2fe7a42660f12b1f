"""TALLY configuration via environment variables.

Every tunable is read from a TALLY_* environment variable. Store
connection parameters are grouped under TALLY_STORE_* and handed to
the store backend as a plain dict.
"""

import os
import logging

logger = logging.getLogger("tally.config")


def _positive_int(name: str, default: str) -> int:
    value = int(os.environ.get(name, default))
    if value <= 0:
        raise ValueError(f"{name} must be a positive integer, got {value}")
    return value


def _positive_float(name: str, default: str) -> float:
    value = float(os.environ.get(name, default))
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {value}")
    return value


class StoreConfig:
    """Configuration for the event store, parsed from environment."""

    def __init__(self, raw: dict[str, str]):
        self.store_type = raw.get("type", "search_index")
        self.endpoint = raw.get("endpoint", "http://localhost:9200")
        self.auth_user = raw.get("auth_user", "")
        self.auth_password = raw.get("auth_password", "")
        self.ca_cert = raw.get("ca_cert", "")
        self.tls_verify = raw.get("tls_verify", "true").lower() == "true"
        self.index_prefix = raw.get("index_prefix", "tally")
        self.request_timeout = int(raw.get("request_timeout", "30"))

    @classmethod
    def from_environ(cls) -> "StoreConfig":
        """Collect TALLY_STORE_* variables into a StoreConfig."""
        prefix = "TALLY_STORE_"
        raw: dict[str, str] = {}
        for key, val in os.environ.items():
            if key.startswith(prefix):
                # Strip prefix and lowercase the suffix
                raw[key[len(prefix):].lower()] = val
        return cls(raw)

    def to_store_config(self) -> dict[str, object]:
        """Convert to the dict format store backends expect."""
        return {
            "endpoint": self.endpoint,
            "auth_user": self.auth_user,
            "auth_password": self.auth_password,
            "ca_cert": self.ca_cert,
            "tls_verify": self.tls_verify,
            "index_prefix": self.index_prefix,
            "request_timeout": self.request_timeout,
        }


class Settings:
    """All configuration sourced from environment."""

    def __init__(self):
        # Core
        self.version = "0.1.0"
        self.log_level = os.environ.get("TALLY_LOG_LEVEL", "info")
        self.api_port = int(os.environ.get("TALLY_API_PORT", "8080"))

        # Worker
        self.poll_interval = _positive_float("TALLY_POLL_INTERVAL", "10")
        self.batch_size = _positive_int("TALLY_BATCH_SIZE", "50")
        self.max_consecutive_failures = _positive_int(
            "TALLY_MAX_CONSECUTIVE_FAILURES", "5"
        )
        self.shutdown_grace_seconds = _positive_float(
            "TALLY_SHUTDOWN_GRACE_SECONDS", "30"
        )

        # Retention cleanup
        self.cleanup_interval = _positive_float("TALLY_CLEANUP_INTERVAL", "60")
        self.retention_days = _positive_int("TALLY_RETENTION_DAYS", "30")

        # Event store
        self.store = StoreConfig.from_environ()
        logger.debug(
            "Store configured: type=%s endpoint=%s prefix=%s",
            self.store.store_type, self.store.endpoint, self.store.index_prefix,
        )


settings = Settings()
