from __future__ import annotations


class ActionError(Exception):
    """Failure reported to the action caller as ``{code, message}``."""

    code = "action_failed"
    retryable = False

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        if code:
            self.code = code


class InvalidRequestError(ActionError):
    code = "bad_request"


class NotConnectedError(ActionError):
    code = "not_connected"

    def __init__(self, message: str = "WhatsApp not connected"):
        super().__init__(message)


class UpstreamError(ActionError):
    """The gateway failed; the same action can be invoked again."""

    code = "upstream_failed"
    retryable = True
