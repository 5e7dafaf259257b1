"""Image processing orchestrator."""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .cache import ArtifactCache, SingleFlight, cache_key_for, compute_fingerprint
from .exceptions import ImageFormatNotSupported, ImageProcessingError
from .image_utils import content_type_from_extension
from .models import CanonicalRequest, ImageFormat, ProcessedArtifact
from .observability import LogContext, MetricsCollector, timed_operation
from .pipeline import EditPipeline
from .protocols import LoggerProtocol


@dataclass
class ProcessingContext:
    """Context for one ``process`` call."""

    fingerprint: str
    cache_key: str
    start_time: float = field(default_factory=time.time)
    log_context: LogContext = field(default_factory=LogContext)


class ImageHandler:
    """
    Turns a canonical request into image bytes.

    A request whose fingerprint is already cached is answered from the
    output bucket without touching the edit pipeline. Otherwise the source
    format is checked, edits are applied, the result is converted to the
    requested output format and stored for later requests on a best-effort
    basis.
    """

    def __init__(
        self,
        pipeline: EditPipeline,
        logger: LoggerProtocol,
        cache: Optional[ArtifactCache] = None,
        metrics_collector: Optional[MetricsCollector] = None,
    ):
        self._pipeline = pipeline
        self._logger = logger
        self._cache = cache
        self._metrics_collector = metrics_collector
        self._single_flight = SingleFlight()

    async def process(self, request: CanonicalRequest) -> bytes:
        fingerprint = compute_fingerprint(
            request.source_bucket,
            request.source_key,
            request.edits,
            request.output_format,
        )
        cache_key = cache_key_for(request.source_key, fingerprint, request.output_format)
        context = ProcessingContext(
            fingerprint=fingerprint,
            cache_key=cache_key,
            log_context=LogContext(
                correlation_id=fingerprint[:16],
                operation="process",
                component="image_handler",
            ).with_metadata(
                bucket=request.source_bucket,
                key=request.source_key,
                cache_key=cache_key,
            ),
        )

        async with timed_operation("process", self._metrics_collector, cache_key=cache_key):
            if self._cache is not None:
                cached = await self._from_cache(context)
                if cached is not None:
                    return cached
            return await self._single_flight.run(
                fingerprint, lambda: self._compute(request, context)
            )

    async def _from_cache(self, context: ProcessingContext) -> Optional[bytes]:
        """Cached artifact bytes, or None; cache failures never surface."""
        try:
            if not await self._cache.exists(context.cache_key):
                return None
            self._logger.info("Using cached processed image", context.log_context)
            await self._cache.record_access(context.cache_key)
            return await self._cache.fetch(context.cache_key)
        except Exception as e:
            self._logger.warning(
                "Error checking for cached image",
                context.log_context.with_metadata(error=str(e)),
            )
            return None

    async def _source_format(self, request: CanonicalRequest) -> ImageFormat:
        declared = request.declared_content_type
        if declared:
            image_format = ImageFormat.parse(declared)
            if image_format is not None:
                return image_format
            if declared.lower().startswith("image/"):
                raise ImageFormatNotSupported()

        info = await asyncio.to_thread(self._pipeline.probe, request.raw_image)
        if info.image_format is None:
            raise ImageFormatNotSupported()
        return info.image_format

    async def _compute(self, request: CanonicalRequest, context: ProcessingContext) -> bytes:
        log_context = context.log_context
        source_format = await self._source_format(request)

        body: Optional[bytes]
        produced_format: Optional[ImageFormat] = source_format
        if request.edits is not None and not request.edits.is_empty:
            self._logger.debug("Applying edits", log_context.with_operation("apply_edits"))
            body = await asyncio.to_thread(self._pipeline.apply, request.raw_image, request.edits)
            target = request.edits.format_options()
            if target is not None:
                produced_format = target[0]
        else:
            body = request.raw_image

        if request.output_format is not None and request.output_format != produced_format:
            if not body:
                raise ImageProcessingError(
                    "Error occurred during image processing. "
                    "Unable to convert image to desired format."
                )
            self._logger.debug("Converting format", log_context.with_operation("format"))
            body = await asyncio.to_thread(
                self._pipeline.format, body, produced_format, request.output_format
            )
            produced_format = request.output_format

        if not body:
            raise ImageProcessingError("Error occurred during image processing.")

        if self._cache is not None:
            await self._store(request, context, body, produced_format)

        self._logger.info(
            "Processed image",
            log_context,
            processing_time_ms=round((time.time() - context.start_time) * 1000),
        )
        return body

    async def _store(
        self,
        request: CanonicalRequest,
        context: ProcessingContext,
        body: bytes,
        produced_format: Optional[ImageFormat],
    ) -> None:
        """Store the artifact; a failure is logged and the request still succeeds."""
        try:
            info = await asyncio.to_thread(self._pipeline.probe, body)
            image_format = info.image_format or produced_format
            content_type = (
                image_format.content_type
                if image_format
                else content_type_from_extension(".jpg")
            )
            requested_edits: Optional[Dict[str, Any]] = (
                request.edits.canonical() if request.edits is not None else None
            )
            artifact = ProcessedArtifact(
                fingerprint=context.fingerprint,
                cache_key=context.cache_key,
                body=body,
                content_type=content_type,
                width=info.width,
                height=info.height,
                size_bytes=len(body),
                source_bucket=request.source_bucket,
                source_key=request.source_key,
                requested_edits=requested_edits,
            )
            await self._cache.store(artifact)
        except Exception as e:
            self._logger.error(
                "Failed to store processed image",
                context.log_context.with_metadata(error=str(e)),
            )
