"""Default request decoder.

Decodes the base64-encoded JSON request path
``{"bucket", "key", "edits", "outputFormat", "headers"}`` and fetches the
source object. Thumbor-style and query-parameter request syntaxes plug in
through ``RequestDecoderProtocol``.
"""

import base64
import binascii
import json
from datetime import datetime, timezone
from email.utils import format_datetime
from typing import Any, Dict, Optional

from botocore.exceptions import BotoCoreError, ClientError

from .cache import read_object_body
from .config import DEFAULT_FALLBACK_CACHE_CONTROL, HandlerConfig
from .error_handling import client_error_code, is_not_found
from .exceptions import (
    ImageHandlerError,
    RequestNormalizationError,
    StatusCodes,
)
from .models import CanonicalRequest, EditSet, ImageFormat, ImageHandlerEvent
from .protocols import LoggerProtocol, S3ClientProtocol

EXPIRES_FORMAT = "%Y%m%dT%H%M%SZ"


def http_date(value: Any) -> Optional[str]:
    """Render a datetime as an RFC 7231 date; strings pass through."""
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return format_datetime(value.astimezone(timezone.utc), usegmt=True)
    return str(value)


def decode_request_path(path: str) -> Dict[str, Any]:
    """Decode a ``/<base64 JSON>`` request path into its JSON document."""
    encoded = (path or "").strip("/")
    if not encoded:
        raise RequestNormalizationError(
            "The image request you provided could not be decoded.",
            code="DecodeRequest::CannotDecodeRequest",
        )
    encoded = encoded.replace("-", "+").replace("_", "/")
    encoded += "=" * (-len(encoded) % 4)
    try:
        document = json.loads(base64.b64decode(encoded, validate=True))
    except (binascii.Error, ValueError) as e:
        raise RequestNormalizationError(
            "The image request you provided could not be decoded. Please check "
            "that your request is base64 encoded properly.",
            code="DecodeRequest::CannotDecodeRequest",
        ) from e
    if not isinstance(document, dict):
        raise RequestNormalizationError(
            "The decoded image request must be a JSON object.",
            code="DecodeRequest::CannotDecodeRequest",
        )
    return document


def seconds_to_expiry(expires: str, now: Optional[datetime] = None) -> int:
    """
    Seconds until an ``expires`` query value such as ``20301231T235959Z``.

    Raises:
        ImageHandlerError: 400 when the value is malformed or already past
    """
    try:
        deadline = datetime.strptime(expires, EXPIRES_FORMAT).replace(
            tzinfo=timezone.utc
        )
    except ValueError as e:
        raise ImageHandlerError(
            "Expires date must be in the format YYYYMMDDTHHmmssZ.",
            status=StatusCodes.BAD_REQUEST,
            code="ImageRequestExpiryFormat",
        ) from e
    now = now or datetime.now(timezone.utc)
    remaining = int((deadline - now).total_seconds())
    if remaining < 0:
        raise ImageHandlerError(
            "Request has expired.",
            status=StatusCodes.BAD_REQUEST,
            code="ImageRequestExpired",
        )
    return remaining


class DefaultRequestDecoder:
    """Builds a ``CanonicalRequest`` from a normalised event."""

    def __init__(
        self,
        s3_client: S3ClientProtocol,
        config: HandlerConfig,
        logger: LoggerProtocol,
    ):
        self._s3_client = s3_client
        self._config = config
        self._logger = logger

    async def decode(self, event: ImageHandlerEvent) -> CanonicalRequest:
        document = decode_request_path(event.path)

        # Edits are validated before the source object is read.
        edits = EditSet.parse(document.get("edits"))
        bucket = self._resolve_bucket(document.get("bucket"))
        key = document.get("key")
        if not isinstance(key, str) or not key:
            raise RequestNormalizationError(
                "The image request must name the key of the source image.",
                code="ImageEdits::CannotFindImage",
            )

        expires = event.query_string_parameters.get("expires")
        remaining = seconds_to_expiry(expires) if expires else None

        source = await self._fetch_source(bucket, key)
        self._logger.debug(
            "Decoded image request", bucket=bucket, key=key, size=len(source["body"])
        )
        return CanonicalRequest(
            source_bucket=bucket,
            source_key=key,
            edits=edits,
            output_format=ImageFormat.parse(document.get("outputFormat")),
            raw_image=source["body"],
            declared_content_type=source.get("content_type"),
            cache_control=source.get("cache_control") or DEFAULT_FALLBACK_CACHE_CONTROL,
            expires=source.get("expires"),
            last_modified=source.get("last_modified"),
            seconds_to_expiry=remaining,
            headers=self._custom_headers(document.get("headers")),
        )

    def cache_control_for(self, event: ImageHandlerEvent) -> Optional[str]:
        document = decode_request_path(event.path)
        headers = self._custom_headers(document.get("headers")) or {}
        return headers.get("Cache-Control")

    def _resolve_bucket(self, bucket: Optional[str]) -> str:
        allowed = self._config.source_buckets
        if not bucket:
            if not allowed:
                raise ImageHandlerError(
                    "The image request must name a source bucket.",
                    status=StatusCodes.BAD_REQUEST,
                    code="ImageBucket::CannotFindBucket",
                )
            return allowed[0]
        if allowed and bucket not in allowed:
            raise ImageHandlerError(
                "The bucket you specified could not be accessed. Please check that "
                "the bucket is specified in your SOURCE_BUCKETS.",
                status=StatusCodes.FORBIDDEN,
                code="ImageBucket::CannotAccessBucket",
            )
        return bucket

    @staticmethod
    def _custom_headers(headers: Any) -> Optional[Dict[str, str]]:
        if not isinstance(headers, dict) or not headers:
            return None
        return {str(name): str(value) for name, value in headers.items()}

    async def _fetch_source(self, bucket: str, key: str) -> Dict[str, Any]:
        try:
            response = await self._s3_client.get_object(Bucket=bucket, Key=key)
            body = await read_object_body(response)
        except ClientError as e:
            if is_not_found(e):
                raise ImageHandlerError(
                    "The image you specified could not be found.",
                    status=StatusCodes.NOT_FOUND,
                    code="NoSuchKey",
                ) from e
            status = e.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
            raise ImageHandlerError(
                e.response.get("Error", {}).get("Message") or str(e),
                status=status or StatusCodes.INTERNAL_SERVER_ERROR,
                code=client_error_code(e) or "S3Error",
            ) from e
        except BotoCoreError as e:
            self._logger.error("Error reading source image", bucket=bucket, key=key)
            raise ImageHandlerError(
                "The image you specified could not be read.",
                code="ImageBucket::CannotReadImage",
            ) from e

        return {
            "body": body,
            "content_type": response.get("ContentType"),
            "cache_control": response.get("CacheControl"),
            "expires": http_date(response.get("Expires")),
            "last_modified": http_date(response.get("LastModified")),
        }
