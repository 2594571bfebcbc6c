"""
Error Taxonomy
==============

Exceptions raised inside the client. None of them is allowed to escape the
tick loop: each is caught at the boundary that owns the failure.

    TransportError  - connect failed / socket closed (Supervisor retries)
    ProtocolError   - malformed frame or type mismatch (frame dropped)
    LivenessError   - heartbeat threshold exceeded (Session aborted)
    CommandError    - executor rejected a command (reported in the response)
"""


class PoseClientError(Exception):
    """Base class for all client errors."""


class TransportError(PoseClientError):
    """The WebSocket could not be opened or was lost."""


class ProtocolError(PoseClientError):
    """A control message or value frame could not be decoded."""


class LivenessError(TransportError):
    """The peer stopped answering heartbeats on an open connection."""


class CommandError(PoseClientError):
    """A command was rejected by the executor or had an invalid payload."""
