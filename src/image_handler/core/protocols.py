"""Protocol definitions for dependency injection and testability."""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Protocol

from .models import (
    BatchTransformSpec,
    CanonicalRequest,
    ImageHandlerEvent,
    VariantResult,
)

if TYPE_CHECKING:
    from .normalizer import NormalizedEvent


class S3ClientProtocol(Protocol):
    """Protocol for the async S3 client operations the handler uses."""

    async def get_object(self, Bucket: str, Key: str, **kwargs: Any) -> Dict[str, Any]:
        """Get object from S3."""
        ...

    async def put_object(
        self, Bucket: str, Key: str, Body: bytes, **kwargs: Any
    ) -> Dict[str, Any]:
        """Put object to S3."""
        ...

    async def head_object(self, Bucket: str, Key: str, **kwargs: Any) -> Dict[str, Any]:
        """Read object headers from S3."""
        ...

    async def write_get_object_response(self, **kwargs: Any) -> Dict[str, Any]:
        """Answer an S3 Object Lambda GetObject request."""
        ...


class MetadataTableProtocol(Protocol):
    """Protocol for a DynamoDB table resource."""

    async def put_item(self, Item: Dict[str, Any], **kwargs: Any) -> Dict[str, Any]:
        ...

    async def get_item(self, Key: Dict[str, Any], **kwargs: Any) -> Dict[str, Any]:
        ...

    async def update_item(self, Key: Dict[str, Any], **kwargs: Any) -> Dict[str, Any]:
        ...


class LoggerProtocol(Protocol):
    """Protocol for logging operations."""

    def debug(self, message: str, context: Any = None, **kwargs: Any) -> None:
        """Log debug message."""
        ...

    def info(self, message: str, context: Any = None, **kwargs: Any) -> None:
        """Log info message."""
        ...

    def warning(self, message: str, context: Any = None, **kwargs: Any) -> None:
        """Log warning message."""
        ...

    def error(self, message: str, context: Any = None, **kwargs: Any) -> None:
        """Log error message."""
        ...


class RequestDecoderProtocol(Protocol):
    """Turns a normalised event into a canonical request."""

    async def decode(self, event: ImageHandlerEvent) -> CanonicalRequest:
        ...

    def cache_control_for(self, event: ImageHandlerEvent) -> Optional[str]:
        """Cache-Control the request asked for, used by the fallback image."""
        ...


class ImageProcessorProtocol(Protocol):
    """Protocol for the orchestrator that turns a request into image bytes."""

    async def process(self, request: CanonicalRequest) -> bytes:
        ...


class VariantProcessor(ABC):
    """Abstract strategy for producing the variants of one uploaded object."""

    @abstractmethod
    async def process_variants(
        self,
        image_bytes: bytes,
        variants: List[BatchTransformSpec],
        produce: Any,
    ) -> List[VariantResult]:
        """Run ``produce(image_bytes, variant)`` for every variant.

        A failing variant yields an error result and never prevents the
        others from running.
        """
        ...


class ResponseDelivery(ABC):
    """Capability that finishes one invocation with an execution result."""

    @abstractmethod
    async def deliver(
        self, normalized: "NormalizedEvent", remaining_time_ms: Optional[int] = None
    ) -> Optional[Dict[str, Any]]:
        """Process the request and hand the result back to the caller."""
        ...
