from .errors import (
    PipelineError, ValidationError, DependencyError, RasterizationError,
    ConfigurationError, UpstreamRejection, OAuthExchangeError, ParseError,
    InvalidTransition,
)
from .rasterizer import PdfRasterizer
from .extraction import ExtractionClient
from .fortnox import FortnoxGateway, build_purchase_order_payload
from .credentials import CredentialStore
from .backends import LocalBackend, QueueBackend
from .api_client import ApiClient
from .queue import ProcessingQueue

__all__ = [
    "PipelineError", "ValidationError", "DependencyError", "RasterizationError",
    "ConfigurationError", "UpstreamRejection", "OAuthExchangeError", "ParseError",
    "InvalidTransition",
    "PdfRasterizer", "ExtractionClient", "FortnoxGateway", "build_purchase_order_payload",
    "CredentialStore", "LocalBackend", "QueueBackend", "ApiClient", "ProcessingQueue",
]
