"""
Failure taxonomy for the conversation pipeline.

Every failure is terminal for the turn it happens in. Only ``RequestFailed``
reaches the recovery policy; the others are recovered where they are raised
or rejected before a turn starts.
"""

from typing import Optional


class CompanionError(Exception):
    """Base class for companion errors"""


class ConfigurationMissing(CompanionError):
    """No credential is configured; the turn never reaches the network"""


class InvalidCredentialError(CompanionError, ValueError):
    """A credential was offered that does not look like one"""


class ContextAcquisitionFailed(CompanionError):
    """Page extraction failed or the page is not allowed to be read"""


class RequestFailed(CompanionError):
    """The completion request failed at the HTTP or transport level

    ``status`` is the HTTP status code, or ``None`` for transport errors
    (DNS, timeouts, undecodable bodies).
    """

    def __init__(self, status: Optional[int] = None, detail: str = ""):
        self.status = status
        self.detail = detail
        message = f"Completion request failed with status {status}" if status is not None else "Completion request failed"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class MalformedReplyEnvelope(CompanionError):
    """A successful response did not carry choices[0].message.content"""


class TurnInProgressError(CompanionError):
    """A new utterance arrived while another turn was still running"""
