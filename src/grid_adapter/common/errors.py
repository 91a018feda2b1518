"""Error taxonomy for the grid adapter.

Every error carries the HTTP status and the message shown to the client.
Upstream details go to the log only; 5xx errors always present the same
generic message.
"""
from __future__ import annotations

GENERIC_MESSAGE = "Internal server error"


class AdapterError(Exception):
    """Base class for errors surfaced through the HTTP layer."""

    status_code: int = 500
    public_message: str = GENERIC_MESSAGE

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.public_message)
        self.detail = detail or self.public_message


class MissingApiKey(AdapterError):
    status_code = 401
    public_message = "Missing API key"


class MissingMessages(AdapterError):
    status_code = 400
    public_message = "Missing messages"


class MissingPrompt(AdapterError):
    status_code = 400
    public_message = "Missing required prompt field."


class InvalidRequest(AdapterError):
    """Malformed input; the detail is safe to show to the caller."""

    status_code = 400

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.public_message = detail


class SubmitFailed(AdapterError):
    """The grid refused the job or answered without a job id."""


class UpstreamError(AdapterError):
    """Non-2xx status or malformed body from the grid."""


class PollTimeout(AdapterError):
    """The job did not finish within the deadline or attempt budget."""


class JobCancelled(AdapterError):
    """The inbound client went away while the job was in flight."""


class InternalError(AdapterError):
    pass
