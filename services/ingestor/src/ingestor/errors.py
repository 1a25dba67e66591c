from __future__ import annotations


class IngestorError(Exception):
    """Base class for errors raised by the ingestion core."""


class AuthenticationError(IngestorError):
    """The request signature or bearer token could not be verified."""


class PayloadValidationError(IngestorError):
    """The payload is structurally malformed and must not be retried."""


class TransientError(IngestorError):
    """A downstream dependency failed in a way that may succeed on retry."""


class DownstreamRejectedError(TransientError):
    def __init__(self, status_code: int, detail: str) -> None:
        super().__init__(f"downstream rejected candidate ({status_code}): {detail}")
        self.status_code = status_code
        self.detail = detail
