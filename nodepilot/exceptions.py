"""Custom exceptions for node health and selection."""


class NodePilotError(Exception):
    """Base exception for node health and selection errors."""

    pass


class ConfigurationError(NodePilotError):
    """Missing or invalid setup. Fatal to the operation attempted."""

    pass


class InvalidRequestError(NodePilotError):
    """Malformed caller arguments. Rejected immediately, never retried."""

    pass


class FetchError(NodePilotError):
    """Transport failure while talking to a remote endpoint."""

    pass


class FetchTimeoutError(FetchError):
    """A request was cancelled because its deadline elapsed."""

    def __init__(self, url: str, timeout: float):
        super().__init__(f"Request timed out after {timeout:.1f}s: {url}")
        self.url = url
        self.timeout = timeout


class ProbeError(NodePilotError):
    """Error measuring a node."""

    pass
