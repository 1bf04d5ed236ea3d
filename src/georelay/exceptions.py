"""Custom exception hierarchy for georelay."""

from __future__ import annotations


class GeoRelayError(Exception):
    """Base exception for all georelay errors."""


class RelayConfigError(GeoRelayError):
    """Invalid or missing configuration."""


class BrokerConnectionError(GeoRelayError, ConnectionError):
    """Broker unreachable, refused the connection, or dropped it.

    Recovered automatically by the reconnect loop; only ever surfaced to
    viewers as the ``brokerConnected`` flag of the health surface.
    """

    def __init__(self, message: str, *, address: str = "") -> None:
        self.address = address
        super().__init__(message)


class MalformedMessageError(GeoRelayError):
    """Broker payload could not be parsed or lacks required fields."""

    def __init__(self, message: str, *, topic: str = "") -> None:
        self.topic = topic
        super().__init__(message)


class NotConnectedError(GeoRelayError):
    """Publish attempted while the broker link is down."""


class PublishFailureError(GeoRelayError):
    """Broker client rejected or errored on a publish."""

    def __init__(self, message: str, *, topic: str = "") -> None:
        self.topic = topic
        super().__init__(message)
