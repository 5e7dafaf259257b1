"""Core utilities and shared components for the image handler."""

from .cache import (
    ArtifactCache,
    MetadataStore,
    SingleFlight,
    cache_key_for,
    compute_fingerprint,
)
from .config import HandlerConfig
from .exceptions import (
    ConfigurationError,
    ImageEditsError,
    ImageFormatError,
    ImageFormatNotSupported,
    ImageHandlerError,
    ImageHandlerPipelineError,
    ImageProcessingError,
    InvalidImageEdits,
    RequestNormalizationError,
    S3Error,
    S3ObjectLambdaWriteError,
    StatusCodes,
    TimeoutException,
    TooLargeImageException,
)
from .image_utils import expand_hex, hex_to_rgb
from .logging_config import configure_lambda_logging, get_logger, setup_logger
from .models import (
    BatchTransformSpec,
    CanonicalRequest,
    EditSet,
    ExecutionResult,
    ImageFormat,
    ImageHandlerEvent,
    MetadataRecord,
    ProcessedArtifact,
)
from .normalizer import EventKind, NormalizedEvent, is_s3_upload_event, normalize_event
from .pipeline import EditPipeline, ImageInfo
from .services import ImageHandler

__all__ = [
    "ArtifactCache",
    "MetadataStore",
    "SingleFlight",
    "cache_key_for",
    "compute_fingerprint",
    "HandlerConfig",
    "ConfigurationError",
    "ImageEditsError",
    "ImageFormatError",
    "ImageFormatNotSupported",
    "ImageHandlerError",
    "ImageHandlerPipelineError",
    "ImageProcessingError",
    "InvalidImageEdits",
    "RequestNormalizationError",
    "S3Error",
    "S3ObjectLambdaWriteError",
    "StatusCodes",
    "TimeoutException",
    "TooLargeImageException",
    "expand_hex",
    "hex_to_rgb",
    "configure_lambda_logging",
    "get_logger",
    "setup_logger",
    "BatchTransformSpec",
    "CanonicalRequest",
    "EditSet",
    "ExecutionResult",
    "ImageFormat",
    "ImageHandlerEvent",
    "MetadataRecord",
    "ProcessedArtifact",
    "EventKind",
    "NormalizedEvent",
    "is_s3_upload_event",
    "normalize_event",
    "EditPipeline",
    "ImageInfo",
    "ImageHandler",
]
