from __future__ import annotations


class RelayError(Exception):
    pass


class TransportError(RelayError):
    """Control-link connect or send failure."""


class ChannelDetachedError(RelayError):
    """The bridge channel between supervisor and executor went away."""


class CaptureError(RelayError):
    """Surface capture failed or produced no usable image."""


class PendingTimeoutError(RelayError):
    pass


class MalformedCommandError(RelayError):
    """A command frame is missing required fields.

    `result_type` names the result frame the command should be answered with;
    it is None when the frame's type is not a known command.
    """

    def __init__(self, message: str, *, request_id: str | int | None = None, result_type: str | None = None) -> None:
        super().__init__(message)
        self.request_id = request_id
        self.result_type = result_type


class CdpError(RelayError):
    """DevTools endpoint unreachable, or a CDP command failed."""
