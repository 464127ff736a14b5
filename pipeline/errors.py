"""
Exceptions raised across the purchase order pipeline.

Every failure at the extraction or Fortnox boundary is one of these, so the
processing queue and the HTTP routes can turn it into a readable message
without knowing which collaborator failed.
"""
from typing import Any, Iterable, Optional


class PipelineError(Exception):
    """Base exception for all pipeline errors."""


class ValidationError(PipelineError):
    """Required input fields were missing. Raised before any network call."""

    def __init__(self, missing: Iterable[str], message: Optional[str] = None) -> None:
        self.missing = list(missing)
        super().__init__(message or f"Missing required parameters: {', '.join(self.missing)}")


class DependencyError(PipelineError):
    """A local dependency or upstream service is unavailable or misconfigured."""


class RasterizationError(DependencyError):
    """The PDF could not be converted to an image."""


class ConfigurationError(DependencyError):
    """Credentials or settings needed for a call could not be resolved."""


class UpstreamRejection(PipelineError):
    """An upstream API answered with a non-success response."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        payload: Any = None,
    ) -> None:
        self.status_code = status_code
        self.payload = payload
        super().__init__(message)


class OAuthExchangeError(UpstreamRejection):
    """The OAuth token endpoint refused the authorization code."""


class ParseError(PipelineError):
    """An upstream response was empty or not the expected JSON."""


class InvalidTransition(PipelineError):
    """A queue item was moved along an edge the state machine does not allow."""
