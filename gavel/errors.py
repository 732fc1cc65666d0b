"""Error taxonomy for the sync client.

None of these are allowed to escape to the top of the process: each one is
caught at the component boundary and turned into a notification plus a
well-defined state.
"""
from __future__ import annotations


class GavelError(Exception):
    """Base class for all client errors."""


class TransportError(GavelError):
    """Channel could not be opened, was lost, or a frame could not be sent."""

    def __init__(self, msg: str, url: str = ""):
        self.msg = msg
        self.url = url
        super().__init__(f"{msg} ({url})" if url else msg)


class ProtocolError(GavelError):
    """Inbound payload is malformed or not what the event contract says."""

    def __init__(self, msg: str, event: str = ""):
        self.msg = msg
        self.event = event
        super().__init__(f"{event}: {msg}" if event else msg)


class SnapshotLoadError(GavelError):
    """The snapshot/query service failed to answer."""

    def __init__(self, msg: str, endpoint: str = "", status: int | None = None):
        self.msg = msg
        self.endpoint = endpoint
        self.status = status
        super().__init__(f"{msg} ({endpoint})" if endpoint else msg)


class SubmissionRejected(GavelError):
    """Server refused a bid."""


class PolicyViolation(GavelError):
    """Bid refused locally before anything was sent."""

    def __init__(self, msg: str, listing_id=None):
        self.msg = msg
        self.listing_id = listing_id
        super().__init__(msg)
