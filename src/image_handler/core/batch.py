"""Batch ingestion controller for S3 upload notifications."""

import json
import random
import string
import time
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import unquote_plus

from .cache import MetadataStore, read_object_body
from .config import ARTIFACT_CACHE_CONTROL, HandlerConfig
from .error_handling import BatchOperationContextManager
from .image_utils import content_type_from_extension, file_extension
from .models import (
    BatchRecordResult,
    BatchTransformSpec,
    CanonicalRequest,
    EditSet,
    FitMode,
    ImageFormat,
    VariantResult,
    utc_now_iso,
)
from .observability import LogContext
from .protocols import (
    ImageProcessorProtocol,
    LoggerProtocol,
    S3ClientProtocol,
    VariantProcessor,
)

UPLOAD_EXTENSIONS = (".jpg", ".jpeg", ".png", ".gif", ".webp", ".tiff", ".svg")
PROCESSED_PREFIX = "processed/"

STANDARD_VARIANTS = (
    BatchTransformSpec(width=100, height=100, suffix="thumb", quality=80),
    BatchTransformSpec(width=500, height=500, suffix="medium", quality=85),
    BatchTransformSpec(width=1024, height=1024, suffix="large", quality=90),
    BatchTransformSpec(
        width=1920, height=1080, suffix="banner", fit=FitMode.INSIDE, quality=90
    ),
)


def variants_for(config: HandlerConfig) -> List[BatchTransformSpec]:
    """The variant list, with the watermarked variant when watermarking is on."""
    variants = list(STANDARD_VARIANTS)
    if config.enable_watermark:
        variants.append(
            BatchTransformSpec(
                width=2048,
                height=2048,
                suffix="watermarked",
                fit=FitMode.INSIDE,
                quality=95,
                watermark={
                    "text": config.watermark_text,
                    "opacity": 0.5,
                    "position": "bottom-right",
                },
            )
        )
    return variants


def generate_processing_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=8))
    return f"img_{int(time.time() * 1000)}_{suffix}"


def output_format_for(content_type: str, variant: BatchTransformSpec) -> ImageFormat:
    """Explicit variant format, else webp for thumbnails, else keep the source."""
    if variant.output_format is not None:
        return variant.output_format
    if variant.suffix == "thumb":
        return ImageFormat.WEBP
    content_type = content_type.lower()
    if "jpeg" in content_type or "jpg" in content_type:
        return ImageFormat.JPEG
    for image_format in (ImageFormat.PNG, ImageFormat.WEBP, ImageFormat.GIF):
        if image_format.value in content_type:
            return image_format
    return ImageFormat.JPEG


def build_variant_edits(
    variant: BatchTransformSpec, output_format: ImageFormat
) -> EditSet:
    """
    Edits producing one variant.

    Raises:
        InvalidImageEdits: if the variant parameters are not valid edits
    """
    edits: Dict[str, Any] = {
        "resize": {
            "width": variant.width,
            "height": variant.height,
            "fit": (variant.fit or FitMode.COVER).value,
        }
    }
    if output_format is ImageFormat.JPEG:
        edits["flatten"] = {"background": "#ffffff"}
    if variant.watermark:
        edits["watermark"] = variant.watermark

    format_block: Dict[str, Any] = {}
    if variant.quality and output_format in (
        ImageFormat.JPEG,
        ImageFormat.PNG,
        ImageFormat.WEBP,
    ):
        format_block["quality"] = variant.quality
    edits[output_format.value] = format_block
    return EditSet.parse(edits)


def parse_upload_record(record: Dict[str, Any]) -> Tuple[str, str]:
    """Bucket and decoded key of an S3 notification record."""
    s3 = record["s3"]
    return s3["bucket"]["name"], unquote_plus(s3["object"]["key"])


class BatchIngestionController:
    """
    Produces the standard variants for every uploaded image.

    Failures are isolated: a failed variant becomes an ``error`` result, a
    failed record is logged and recorded, and the invocation itself never
    raises once the configuration has been checked.
    """

    def __init__(
        self,
        s3_client: S3ClientProtocol,
        image_handler: ImageProcessorProtocol,
        variant_processor: VariantProcessor,
        config: HandlerConfig,
        logger: LoggerProtocol,
        metadata_store: Optional[MetadataStore] = None,
        region: str = "us-east-1",
    ):
        self._s3_client = s3_client
        self._image_handler = image_handler
        self._variant_processor = variant_processor
        self._config = config
        self._logger = logger
        self._metadata_store = metadata_store
        self._region = region

    async def handle(self, event: Dict[str, Any]) -> Dict[str, Any]:
        """
        Process every record of an upload notification.

        Returns:
            Summary with processed/skipped/failed record counts and the
            per-record results

        Raises:
            ConfigurationError: if no output bucket is configured
        """
        output_bucket = self._config.require_output_bucket()
        variants = variants_for(self._config)

        results: List[BatchRecordResult] = []
        skipped = 0
        with BatchOperationContextManager("Upload ingestion") as batch:
            for record in event.get("Records", []):
                try:
                    bucket, key = parse_upload_record(record)
                except (KeyError, TypeError) as e:
                    batch.add_error(f"Malformed record: {e}", "record")
                    continue

                if not self._should_process(key):
                    skipped += 1
                    continue

                try:
                    result = await self._process_record(bucket, key, output_bucket, variants)
                except Exception as e:
                    batch.add_error(str(e), f"{bucket}/{key}")
                    await self._store_error_document(bucket, key, e)
                    continue

                results.append(result)
                for variant_result in result.processing_results:
                    if not variant_result.succeeded:
                        batch.add_error(
                            variant_result.error_message or "Unknown error",
                            f"{key}:{variant_result.transform_type}",
                        )

            failed = batch.error_count

        return {
            "processed": len(results),
            "skipped": skipped,
            "errors": failed,
            "records": [result.to_item() for result in results],
        }

    def _should_process(self, key: str) -> bool:
        if not key.startswith(self._config.upload_prefix):
            self._logger.info(f"Skipping {key} - not in uploads directory")
            return False
        if file_extension(key) not in UPLOAD_EXTENSIONS:
            self._logger.info(f"Skipping {key} - not a supported image format")
            return False
        return True

    async def _process_record(
        self,
        bucket: str,
        key: str,
        output_bucket: str,
        variants: List[BatchTransformSpec],
    ) -> BatchRecordResult:
        start_time = time.time()
        processing_id = generate_processing_id()
        log_context = LogContext(
            correlation_id=processing_id,
            operation="process_upload",
            component="batch_ingestion",
        ).with_metadata(bucket=bucket, key=key)
        self._logger.info("Processing uploaded image", log_context)

        response = await self._s3_client.get_object(Bucket=bucket, Key=key)
        image_bytes = await read_object_body(response)
        extension = file_extension(key)
        content_type = response.get("ContentType") or content_type_from_extension(extension)

        name = key.rsplit("/", 1)[-1]
        file_name = name.rsplit(".", 1)[0] if "." in name else name

        async def produce(data: bytes, variant: BatchTransformSpec) -> VariantResult:
            return await self._produce_variant(
                data,
                variant,
                bucket=bucket,
                key=key,
                file_name=file_name,
                content_type=content_type,
                output_bucket=output_bucket,
                processing_id=processing_id,
            )

        variant_results = await self._variant_processor.process_variants(
            image_bytes, variants, produce
        )

        result = BatchRecordResult(
            id=processing_id,
            original_file_name=file_name,
            original_bucket=bucket,
            original_key=key,
            original_format=extension.lstrip("."),
            original_content_type=content_type,
            processed_bucket=output_bucket,
            processing_results=variant_results,
            processing_time_ms=round((time.time() - start_time) * 1000),
        )
        await self._store_document(result.to_item(), log_context)
        return result

    async def _produce_variant(
        self,
        image_bytes: bytes,
        variant: BatchTransformSpec,
        *,
        bucket: str,
        key: str,
        file_name: str,
        content_type: str,
        output_bucket: str,
        processing_id: str,
    ) -> VariantResult:
        output_format = output_format_for(content_type, variant)
        edits = build_variant_edits(variant, output_format)
        self._logger.info(f"Applying {variant.suffix} transformation", key=key)

        body = await self._image_handler.process(
            CanonicalRequest(
                source_bucket=bucket,
                source_key=key,
                edits=edits,
                output_format=output_format,
                raw_image=image_bytes,
                declared_content_type=content_type,
            )
        )

        output_name = f"{file_name}-{variant.suffix}.{output_format.extension}"
        output_key = f"{PROCESSED_PREFIX}{output_name}"
        await self._s3_client.put_object(
            Bucket=output_bucket,
            Key=output_key,
            Body=body,
            ContentType=output_format.content_type,
            Metadata={
                "original-bucket": bucket,
                "original-key": key,
                "transformation": json.dumps(
                    variant.model_dump(mode="json", exclude_none=True)
                ),
                "processing-id": processing_id,
            },
            CacheControl=ARTIFACT_CACHE_CONTROL,
            ContentDisposition=f'inline; filename="{output_name}"',
        )
        output_url = (
            f"https://{output_bucket}.s3.{self._region}.amazonaws.com/{output_key}"
        )
        self._logger.info(f"Saved processed image to {output_url}")

        return VariantResult(
            transform_type=variant.suffix,
            status="success",
            output_key=output_key,
            output_format=output_format.value,
            output_url=output_url,
            width=variant.width,
            height=variant.height,
        )

    async def _store_document(self, item: Dict[str, Any], log_context: LogContext) -> None:
        if self._metadata_store is None:
            return
        try:
            await self._metadata_store.put(item)
            self._logger.info("Stored batch metadata", log_context)
        except Exception as e:
            self._logger.warning(
                "Metadata storage failed, continuing without it",
                log_context.with_metadata(error=str(e)),
            )

    async def _store_error_document(self, bucket: str, key: str, error: Exception) -> None:
        if self._metadata_store is None:
            return
        processing_id = generate_processing_id()
        document = {
            "imageId": processing_id,
            "id": processing_id,
            "originalBucket": bucket,
            "originalKey": key,
            "errorMessage": str(error) or "Unknown error",
            "errorType": type(error).__name__,
            "createdAt": utc_now_iso(),
            "status": "error",
        }
        try:
            await self._metadata_store.put(document)
        except Exception as e:
            self._logger.error("Failed to store error metadata", error=str(e))
