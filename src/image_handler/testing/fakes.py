"""Fake implementations for testing purposes."""

import asyncio
import base64
import copy
import io
import json
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from botocore.exceptions import ClientError
from PIL import Image


def client_error(code: str, operation: str, status: int = 400, message: str = "") -> ClientError:
    """Build the botocore ClientError a real client raises."""
    return ClientError(
        {
            "Error": {"Code": code, "Message": message or code},
            "ResponseMetadata": {"HTTPStatusCode": status},
        },
        operation,
    )


class FakeStreamingBody:
    """Async streaming body as returned by aioboto3."""

    def __init__(self, data: bytes):
        self._data = data

    async def __aenter__(self) -> "FakeStreamingBody":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        return None

    async def read(self) -> bytes:
        return self._data


@dataclass
class S3Object:
    """Fake S3 object for testing."""

    key: str
    body: bytes
    content_type: Optional[str] = "image/jpeg"
    cache_control: Optional[str] = None
    last_modified: datetime = field(
        default_factory=lambda: datetime(2024, 1, 1, tzinfo=timezone.utc)
    )
    metadata: Dict[str, str] = field(default_factory=dict)
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def size(self) -> int:
        return len(self.body)


@dataclass
class S3Bucket:
    """Fake S3 bucket for testing."""

    name: str
    objects: Dict[str, S3Object] = field(default_factory=dict)

    def add_object(
        self,
        key: str,
        body: bytes,
        content_type: Optional[str] = "image/jpeg",
        **kwargs: Any,
    ) -> S3Object:
        """Add object to bucket."""
        obj = S3Object(key=key, body=body, content_type=content_type, **kwargs)
        self.objects[key] = obj
        return obj

    def get_object(self, key: str) -> Optional[S3Object]:
        """Get object from bucket."""
        return self.objects.get(key)


class FakeS3Client:
    """Fake async S3 client for testing."""

    def __init__(self):
        self.buckets: Dict[str, S3Bucket] = {}
        self.operation_count = 0
        self.calls: List[Dict[str, Any]] = []
        self.write_responses: List[Dict[str, Any]] = []
        self.failures: Dict[str, List[Exception]] = {}
        self.delay_seconds = 0.0

    def create_bucket(self, name: str) -> S3Bucket:
        """Create a new bucket."""
        bucket = S3Bucket(name=name)
        self.buckets[name] = bucket
        return bucket

    def get_bucket(self, name: str) -> Optional[S3Bucket]:
        """Get bucket by name."""
        return self.buckets.get(name)

    def fail_next(self, operation: str, error: Optional[Exception] = None, times: int = 1) -> None:
        """Make the next ``times`` calls of ``operation`` raise ``error``."""
        error = error or client_error("InternalError", operation, status=500)
        self.failures.setdefault(operation, []).extend([error] * times)

    def set_delay(self, seconds: float) -> None:
        """Set artificial delay for testing timeouts."""
        self.delay_seconds = seconds

    def calls_to(self, operation: str) -> List[Dict[str, Any]]:
        return [call for call in self.calls if call["operation"] == operation]

    async def _enter(self, operation: str, **kwargs: Any) -> None:
        self.operation_count += 1
        self.calls.append({"operation": operation, **kwargs})
        if self.delay_seconds > 0:
            await asyncio.sleep(self.delay_seconds)
        pending = self.failures.get(operation)
        if pending:
            raise pending.pop(0)

    def _find(self, operation: str, Bucket: str, Key: str, not_found_code: str) -> S3Object:
        bucket = self.buckets.get(Bucket)
        if bucket is None:
            raise client_error("NoSuchBucket", operation, status=404)
        obj = bucket.get_object(Key)
        if obj is None:
            raise client_error(
                not_found_code, operation, status=404, message="The specified key does not exist."
            )
        return obj

    async def get_object(self, Bucket: str, Key: str, **kwargs: Any) -> Dict[str, Any]:
        """Get object from S3."""
        await self._enter("get_object", Bucket=Bucket, Key=Key)
        obj = self._find("GetObject", Bucket, Key, "NoSuchKey")
        response = {
            "Body": FakeStreamingBody(obj.body),
            "ContentType": obj.content_type,
            "ContentLength": obj.size,
            "LastModified": obj.last_modified,
            "Metadata": dict(obj.metadata),
        }
        if obj.cache_control is not None:
            response["CacheControl"] = obj.cache_control
        return response

    async def head_object(self, Bucket: str, Key: str, **kwargs: Any) -> Dict[str, Any]:
        """Read object headers from S3."""
        await self._enter("head_object", Bucket=Bucket, Key=Key)
        obj = self._find("HeadObject", Bucket, Key, "404")
        return {
            "ContentType": obj.content_type,
            "ContentLength": obj.size,
            "LastModified": obj.last_modified,
            "ETag": f'"fake-etag-{Key}"',
        }

    async def put_object(
        self, Bucket: str, Key: str, Body: bytes, **kwargs: Any
    ) -> Dict[str, Any]:
        """Put object to S3."""
        await self._enter("put_object", Bucket=Bucket, Key=Key, **kwargs)
        bucket = self.buckets.get(Bucket)
        if bucket is None:
            raise client_error("NoSuchBucket", "PutObject", status=404)
        bucket.add_object(
            Key,
            Body,
            content_type=kwargs.pop("ContentType", None),
            cache_control=kwargs.pop("CacheControl", None),
            metadata=kwargs.pop("Metadata", {}),
            extra=kwargs,
        )
        return {
            "ETag": f'"fake-etag-{Key}"',
            "ResponseMetadata": {"HTTPStatusCode": 200},
        }

    async def write_get_object_response(self, **kwargs: Any) -> Dict[str, Any]:
        """Record an S3 Object Lambda response."""
        await self._enter("write_get_object_response", **kwargs)
        self.write_responses.append(kwargs)
        return {"ResponseMetadata": {"HTTPStatusCode": 200}}


class FakeMetadataTable:
    """Fake DynamoDB table resource holding items in memory."""

    def __init__(self, key_name: str = "imageId"):
        self.key_name = key_name
        self.items: Dict[str, Dict[str, Any]] = {}
        self.documents: List[Dict[str, Any]] = []
        self.should_fail = False
        self.update_count = 0

    def _check(self) -> None:
        if self.should_fail:
            raise client_error("ProvisionedThroughputExceededException", "Table", status=400)

    async def put_item(self, Item: Dict[str, Any], **kwargs: Any) -> Dict[str, Any]:
        self._check()
        if self.key_name not in Item:
            raise client_error(
                "ValidationException",
                "PutItem",
                status=400,
                message="One of the required keys was not given a value",
            )
        item = copy.deepcopy(Item)
        self.documents.append(item)
        self.items[item[self.key_name]] = item
        return {}

    async def get_item(self, Key: Dict[str, Any], **kwargs: Any) -> Dict[str, Any]:
        self._check()
        item = self.items.get(Key[self.key_name])
        return {"Item": copy.deepcopy(item)} if item is not None else {}

    async def update_item(
        self,
        Key: Dict[str, Any],
        UpdateExpression: str,
        ExpressionAttributeNames: Dict[str, str],
        ExpressionAttributeValues: Dict[str, Any],
        **kwargs: Any,
    ) -> Dict[str, Any]:
        """Apply a ``SET #name = :value, ...`` expression."""
        self._check()
        self.update_count += 1
        key = Key[self.key_name]
        item = self.items.setdefault(key, {self.key_name: key})
        assignments = UpdateExpression.strip()[len("SET "):].split(",")
        for assignment in assignments:
            name, value = (part.strip() for part in assignment.split("="))
            item[ExpressionAttributeNames[name]] = ExpressionAttributeValues[value]
        return {"Attributes": copy.deepcopy(item)}


class FakeLogger:
    """Fake logger for testing with support for LogContext."""

    def __init__(self, name: str = "test_logger"):
        self.name = name
        self.logs: List[Dict[str, Any]] = []
        self.should_fail = False

    def _log(
        self, level: str, message: str, context: Any = None, **kwargs: Any
    ) -> None:
        """Internal logging method with context support."""
        if self.should_fail:
            raise Exception("Simulated logging failure")

        log_entry = {
            "level": level,
            "message": message,
            "timestamp": time.time(),
            **kwargs,
        }

        # Handle LogContext if provided
        if context is not None:
            if hasattr(context, "correlation_id"):
                log_entry["correlation_id"] = context.correlation_id
            if hasattr(context, "operation"):
                log_entry["operation"] = context.operation
            if hasattr(context, "metadata"):
                log_entry.update(context.metadata)

        self.logs.append(log_entry)

    def debug(self, message: str, context: Any = None, **kwargs: Any) -> None:
        """Log debug message."""
        self._log("DEBUG", message, context, **kwargs)

    def info(self, message: str, context: Any = None, **kwargs: Any) -> None:
        """Log info message."""
        self._log("INFO", message, context, **kwargs)

    def warning(self, message: str, context: Any = None, **kwargs: Any) -> None:
        """Log warning message."""
        self._log("WARNING", message, context, **kwargs)

    def error(self, message: str, context: Any = None, **kwargs: Any) -> None:
        """Log error message."""
        self._log("ERROR", message, context, **kwargs)

    def get_logs(self, level: Optional[str] = None) -> List[Dict[str, Any]]:
        """Get logged messages, optionally filtered by level."""
        if level:
            return [log for log in self.logs if log["level"] == level]
        return self.logs.copy()

    def clear_logs(self) -> None:
        """Clear all logged messages."""
        self.logs.clear()


class FakeLambdaContext:
    """Lambda context whose remaining time is fixed."""

    def __init__(self, remaining_ms: int = 30000):
        self.remaining_ms = remaining_ms
        self.function_name = "image-handler-test"
        self.aws_request_id = "test-request-id"

    def get_remaining_time_in_millis(self) -> int:
        return self.remaining_ms


def create_test_image(
    width: int = 100,
    height: int = 100,
    image_format: str = "JPEG",
    mode: str = "RGB",
) -> bytes:
    """Create a test image in memory."""
    fill = (255, 0, 0, 128) if mode == "RGBA" else "red"
    image = Image.new(mode, (width, height), color=fill)

    # Add a blue block in the top-left quadrant so orientation is observable
    blue = (0, 0, 255, 255) if mode == "RGBA" else (0, 0, 255)
    for x in range(width // 2):
        for y in range(height // 2):
            image.putpixel((x, y), blue)

    img_bytes = io.BytesIO()
    params = {"quality": 95} if image_format.upper() == "JPEG" else {}
    image.save(img_bytes, format=image_format, **params)
    return img_bytes.getvalue()


def encode_image_request(document: Dict[str, Any]) -> str:
    """Request path for a base64-encoded JSON image request."""
    encoded = base64.b64encode(json.dumps(document).encode("utf-8")).decode("ascii")
    return "/" + encoded


def setup_test_s3_environment() -> FakeS3Client:
    """Set up a test S3 environment with sample data."""
    s3_client = FakeS3Client()

    source_bucket = s3_client.create_bucket("test-source")
    source_bucket.add_object("photos/photo1.jpg", create_test_image(200, 150))
    source_bucket.add_object(
        "photos/logo.png", create_test_image(120, 80, "PNG", "RGBA"), "image/png"
    )
    source_bucket.add_object("uploads/cat.jpg", create_test_image(300, 200))
    source_bucket.add_object("uploads/readme.txt", b"This is not an image", "text/plain")

    s3_client.create_bucket("test-output")
    s3_client.create_bucket("test-fallback").add_object(
        "fallback.png", create_test_image(10, 10, "PNG"), "image/png"
    )

    return s3_client
