"""Fingerprint cache for processed artifacts and the image metadata store."""

import asyncio
import hashlib
import json
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar, Union

from botocore.exceptions import ClientError

from .error_handling import is_not_found, with_s3_error_handling
from .image_utils import key_stem
from .models import (
    EditSet,
    ImageFormat,
    MetadataRecord,
    ProcessedArtifact,
    ProcessingStatus,
    utc_now_iso,
)
from .observability import LogContext
from .protocols import LoggerProtocol, MetadataTableProtocol, S3ClientProtocol

T = TypeVar("T")

FINGERPRINT_KEY_CHARS = 32
CACHED_ARTIFACT_CACHE_CONTROL = "max-age=31536000"


def canonical_request_document(
    bucket: str,
    key: str,
    edits: Optional[Union[EditSet, Dict[str, Any]]] = None,
    output_format: Optional[ImageFormat] = None,
) -> str:
    """Serialise the cache-relevant part of a request with sorted keys."""
    if isinstance(edits, EditSet):
        edits = edits.canonical()
    document = {
        "bucket": bucket,
        "key": key,
        "edits": edits or None,
        "outputFormat": output_format.value if output_format else None,
    }
    document = {name: value for name, value in document.items() if value is not None}
    return json.dumps(document, sort_keys=True, separators=(",", ":"), default=str)


def compute_fingerprint(
    bucket: str,
    key: str,
    edits: Optional[Union[EditSet, Dict[str, Any]]] = None,
    output_format: Optional[ImageFormat] = None,
) -> str:
    """SHA-256 hex digest of the canonical request document."""
    document = canonical_request_document(bucket, key, edits, output_format)
    return hashlib.sha256(document.encode("utf-8")).hexdigest()


def cache_key_for(
    key: str, fingerprint: str, output_format: Optional[ImageFormat] = None
) -> str:
    """Object key of the cached artifact, e.g. ``photo-<32 hex>.webp``."""
    extension = output_format.extension if output_format else "jpg"
    return f"{key_stem(key)}-{fingerprint[:FINGERPRINT_KEY_CHARS]}.{extension}"


async def read_object_body(response: Dict[str, Any]) -> bytes:
    """Read the streamed ``Body`` of a get_object response."""
    body = response["Body"]
    if isinstance(body, (bytes, bytearray)):
        return bytes(body)
    async with body as stream:
        return await stream.read()


def to_dynamo(value: Any) -> Any:
    """DynamoDB rejects floats; round-trip through JSON to get Decimals."""
    return json.loads(json.dumps(value, default=str), parse_float=Decimal)


def from_dynamo(value: Any) -> Any:
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, dict):
        return {k: from_dynamo(v) for k, v in value.items()}
    if isinstance(value, list):
        return [from_dynamo(v) for v in value]
    return value


class MetadataStore:
    """Document store for image metadata, keyed by ``imageId``."""

    def __init__(self, table: MetadataTableProtocol, logger: LoggerProtocol):
        self._table = table
        self._logger = logger

    async def put(self, record: Union[MetadataRecord, Dict[str, Any]]) -> None:
        item = record.to_item() if isinstance(record, MetadataRecord) else record
        await self._table.put_item(Item=to_dynamo(item))

    async def get_document(self, image_id: str) -> Optional[Dict[str, Any]]:
        """Raw document stored under ``image_id``, batch documents included."""
        response = await self._table.get_item(Key={"imageId": image_id})
        item = response.get("Item")
        return from_dynamo(item) if item else None

    async def get(self, image_id: str) -> Optional[MetadataRecord]:
        item = await self.get_document(image_id)
        if item is None:
            return None
        return MetadataRecord.model_validate(item)

    async def update(self, image_id: str, changes: Dict[str, Any]) -> None:
        """Set the given attributes and stamp ``updatedAt``."""
        changes = {
            name: value for name, value in changes.items() if name != "imageId"
        }
        changes["updatedAt"] = utc_now_iso()

        expressions = []
        names: Dict[str, str] = {}
        values: Dict[str, Any] = {}
        for index, (name, value) in enumerate(changes.items()):
            expressions.append(f"#attr{index} = :val{index}")
            names[f"#attr{index}"] = name
            values[f":val{index}"] = value

        await self._table.update_item(
            Key={"imageId": image_id},
            UpdateExpression="SET " + ", ".join(expressions),
            ExpressionAttributeNames=names,
            ExpressionAttributeValues=to_dynamo(values),
            ReturnValues="UPDATED_NEW",
        )
        self._logger.debug("Updated image metadata", image_id=image_id)


class ArtifactCache:
    """Processed artifacts in the output bucket, with their metadata records."""

    def __init__(
        self,
        s3_client: S3ClientProtocol,
        output_bucket: str,
        metadata_store: MetadataStore,
        logger: LoggerProtocol,
    ):
        self._s3_client = s3_client
        self._output_bucket = output_bucket
        self._metadata_store = metadata_store
        self._logger = logger

    @property
    def output_bucket(self) -> str:
        return self._output_bucket

    @with_s3_error_handling
    async def exists(self, cache_key: str) -> bool:
        try:
            await self._s3_client.head_object(Bucket=self._output_bucket, Key=cache_key)
        except ClientError as e:
            if is_not_found(e):
                return False
            raise
        return True

    @with_s3_error_handling
    async def fetch(self, cache_key: str) -> bytes:
        response = await self._s3_client.get_object(
            Bucket=self._output_bucket, Key=cache_key
        )
        return await read_object_body(response)

    async def store(self, artifact: ProcessedArtifact) -> MetadataRecord:
        """
        Write the artifact and its ``processed`` metadata record.

        On failure a ``failed`` record is written on a best-effort basis and
        the original error is re-raised.
        """
        record = MetadataRecord(
            image_id=artifact.cache_key,
            bucket_name=self._output_bucket,
            key=artifact.cache_key,
            format=artifact.content_type.split("/")[-1],
            width=artifact.width,
            height=artifact.height,
            size=artifact.size_bytes,
            content_type=artifact.content_type,
            processing_status=ProcessingStatus.PROCESSED,
            requested_edits=artifact.requested_edits,
        )
        log_context = LogContext(
            correlation_id=artifact.fingerprint,
            operation="store_artifact",
            component="artifact_cache",
        ).with_metadata(cache_key=artifact.cache_key)

        try:
            await self._s3_client.put_object(
                Bucket=self._output_bucket,
                Key=artifact.cache_key,
                Body=artifact.body,
                ContentType=artifact.content_type,
                CacheControl=CACHED_ARTIFACT_CACHE_CONTROL,
                Metadata={
                    "processed": "true",
                    "processing-time": utc_now_iso(),
                    "file-size": str(artifact.size_bytes),
                    "source-bucket": artifact.source_bucket,
                    "source-key": artifact.source_key,
                },
            )
            await self._metadata_store.put(record)
        except Exception as e:
            self._logger.error(
                "Error storing processed image", log_context.with_metadata(error=str(e))
            )
            failed = record.model_copy(
                update={
                    "processing_status": ProcessingStatus.FAILED,
                    "processing_error": str(e),
                }
            )
            try:
                await self._metadata_store.put(failed)
            except Exception as db_error:
                self._logger.error(
                    "Failed to store error metadata",
                    log_context.with_metadata(error=str(db_error)),
                )
            raise

        self._logger.info("Stored processed image", log_context)
        return record

    async def record_access(self, cache_key: str) -> None:
        """Bump ``accessCount`` by one and stamp ``lastAccessed``; never raises."""
        try:
            existing = await self._metadata_store.get(cache_key)
            if existing is None:
                self._logger.debug("No metadata record to update", cache_key=cache_key)
                return
            await self._metadata_store.update(
                cache_key,
                {
                    "accessCount": existing.access_count + 1,
                    "lastAccessed": utc_now_iso(),
                },
            )
        except Exception as e:
            self._logger.error(
                "Error updating access stats", cache_key=cache_key, error=str(e)
            )


class SingleFlight:
    """
    Coalesce concurrent computations of the same key.

    The first caller for a key runs the computation; callers arriving while
    it is in flight await the same result instead of recomputing. Only
    coordinates tasks of one event loop.
    """

    def __init__(self):
        self._in_flight: Dict[str, "asyncio.Future[Any]"] = {}

    def __contains__(self, key: str) -> bool:
        return key in self._in_flight

    async def run(self, key: str, compute: Callable[[], Awaitable[T]]) -> T:
        pending = self._in_flight.get(key)
        if pending is not None:
            return await asyncio.shield(pending)

        future: "asyncio.Future[Any]" = asyncio.get_running_loop().create_future()
        self._in_flight[key] = future
        try:
            result = await compute()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            future.set_exception(e)
            # Mark retrieved so a waiter-less failure is not reported twice.
            future.exception()
            raise
        else:
            future.set_result(result)
            return result
        finally:
            self._in_flight.pop(key, None)
