"""Relay configuration for georelay."""

from __future__ import annotations

import dataclasses
import os
from collections.abc import Mapping
from typing import Any

from dotenv import dotenv_values

from georelay._constants import (
    CONNECT_TIMEOUT,
    DEFAULT_BROKER,
    DEFAULT_PUBLISH_PREFIX,
    DEFAULT_TOPIC_BADGES,
    DEFAULT_TOPIC_GEOFENCE,
    KEEPALIVE,
    RECONNECT_PERIOD,
    SUBSCRIBER_QUEUE_SIZE,
)
from georelay.exceptions import RelayConfigError


def read_env_file(path: str | os.PathLike[str]) -> dict[str, str]:
    """Read a dotenv file with python-dotenv.

    Keys declared without a value are dropped. A missing file yields an
    empty mapping.
    """
    return {key: value for key, value in dotenv_values(path).items() if value is not None}


def _as_int(name: str, value: str) -> int:
    try:
        return int(value)
    except ValueError as exc:
        raise RelayConfigError(f"{name} must be an integer, got {value!r}") from exc


def _as_float(name: str, value: str) -> float:
    try:
        return float(value)
    except ValueError as exc:
        raise RelayConfigError(f"{name} must be a number, got {value!r}") from exc


@dataclasses.dataclass(frozen=True)
class BrokerCredentials:
    """Username/password pair for the MQTT broker."""

    username: str
    password: str

    def __repr__(self) -> str:
        return f"BrokerCredentials(username={self.username!r}, password='***')"


@dataclasses.dataclass(frozen=True)
class RelayConfig:
    """Relay configuration.

    Parameters
    ----------
    broker_url : str
        Broker address, ``mqtt://host:port`` or ``mqtts://host:port``.
    username : str or None
        Broker username. Anonymous when either credential is missing.
    password : str or None
        Broker password.
    topic_badges : str
        Subscription pattern for badge location updates.
    topic_geofence : str
        Subscription pattern for geofence boundary events.
    publish_prefix : str
        Prefix of the outbound ``{prefix}/assets/{mac}/location`` topic.
    host : str
        Interface the viewer-facing HTTP/WebSocket server binds to.
    port : int
        Port of the viewer-facing server.
    connect_timeout : float
        Seconds to wait for the broker to accept a connection.
    reconnect_period : float
        Fixed delay between reconnect attempts, in seconds.
    keepalive : int
        MQTT keepalive in seconds.
    queue_size : int
        Per-viewer broadcast queue bound; the oldest message is dropped on
        overflow.
    """

    broker_url: str = DEFAULT_BROKER
    username: str | None = None
    password: str | None = None
    topic_badges: str = DEFAULT_TOPIC_BADGES
    topic_geofence: str = DEFAULT_TOPIC_GEOFENCE
    publish_prefix: str = DEFAULT_PUBLISH_PREFIX
    host: str = "0.0.0.0"
    port: int = 3001
    connect_timeout: float = CONNECT_TIMEOUT
    reconnect_period: float = RECONNECT_PERIOD
    keepalive: int = KEEPALIVE
    queue_size: int = SUBSCRIBER_QUEUE_SIZE

    def __post_init__(self) -> None:
        if not self.broker_url.strip():
            raise RelayConfigError("broker_url must be non-empty")
        if self.queue_size < 1:
            raise RelayConfigError("queue_size must be at least 1")

    @property
    def credentials(self) -> BrokerCredentials | None:
        """Broker credentials, or ``None`` for an anonymous connection."""
        if self.username and self.password:
            return BrokerCredentials(self.username, self.password)
        return None

    @classmethod
    def from_env(
        cls,
        env_file: str | os.PathLike[str] | None = ".env",
        *,
        environ: Mapping[str, str] | None = None,
        **overrides: Any,
    ) -> RelayConfig:
        """Create configuration from environment variables.

        Process environment variables win over values from *env_file*;
        explicit keyword arguments win over both.

        Parameters
        ----------
        env_file
            Optional dotenv file consulted for variables missing from the
            process environment. ``None`` disables it.
        environ
            Environment mapping, defaults to :data:`os.environ`.
        **overrides
            Explicit field values that take precedence over env vars.

        Returns
        -------
        RelayConfig
            Populated configuration.
        """
        env: dict[str, str] = read_env_file(env_file) if env_file is not None else {}
        env.update(os.environ if environ is None else environ)

        config_kwargs: dict[str, Any] = {}

        broker = env.get("MQTT_BROKER")
        if broker is None and any(
            key in env for key in ("MQTT_BROKER_IN", "MQTT_BROKER_PORT", "MQTT_BROKER_PROTOCOL")
        ):
            protocol = env.get("MQTT_BROKER_PROTOCOL", "mqtt")
            host = env.get("MQTT_BROKER_IN", "iot.mongrov.net")
            port = env.get("MQTT_BROKER_PORT", "1883")
            broker = f"{protocol}://{host}:{port}"
        if broker is not None:
            config_kwargs["broker_url"] = broker

        _ENV_CONFIG_MAP = {
            "MQTT_USERNAME": "username",
            "MQTT_PASSWORD": "password",
            "MQTT_TOPIC_BADGES": "topic_badges",
            "MQTT_TOPIC_GEOFENCE": "topic_geofence",
            "MQTT_PUBLISH_PREFIX": "publish_prefix",
            "HOST": "host",
        }
        for env_key, field_name in _ENV_CONFIG_MAP.items():
            val = env.get(env_key)
            if val:
                config_kwargs[field_name] = val

        port_env = env.get("PORT")
        if port_env is not None and "port" not in overrides:
            config_kwargs["port"] = _as_int("PORT", port_env)

        queue_env = env.get("GEORELAY_QUEUE_SIZE")
        if queue_env is not None and "queue_size" not in overrides:
            config_kwargs["queue_size"] = _as_int("GEORELAY_QUEUE_SIZE", queue_env)

        reconnect_env = env.get("GEORELAY_RECONNECT_PERIOD")
        if reconnect_env is not None and "reconnect_period" not in overrides:
            config_kwargs["reconnect_period"] = _as_float("GEORELAY_RECONNECT_PERIOD", reconnect_env)

        config_kwargs.update(overrides)

        return cls(**config_kwargs)
