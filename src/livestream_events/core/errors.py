"""Exception types raised by connectors and API clients."""


class ConnectorError(Exception):
    """Base class for errors raised inside a connector."""


class TransientError(ConnectorError):
    """Socket drop, HTTP 5xx or timeout. Retried with backoff.

    ``retry_after`` carries a server-requested wait in seconds, if any.
    """

    def __init__(self, message: str = "", retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class ConnectionLostError(TransientError):
    """The transport went away (closed socket, missed keep-alive, server RECONNECT)."""


class AuthenticationError(ConnectorError):
    """No credentials, or the token is still invalid after a refresh attempt.

    Terminal for the connector that raised it.
    """


class QuotaExceededError(ConnectorError):
    """Platform quota or rate limit. Skips the current unit of work only."""


class StreamEndedError(ConnectorError):
    """The configured stream is over. Terminal for the polling loop."""


class ChatEndedError(ConnectorError):
    """The chat session handle is no longer valid and must be re-resolved."""


class MalformedPayloadError(ConnectorError):
    """A single payload could not be understood. The item is dropped."""
