"""Request normalizer.

Maps the inbound event shapes onto one proxy-style ``ImageHandlerEvent``:
API Gateway / ALB proxy events pass through, S3 Object Lambda GetObject
events are rebuilt from ``userRequest.url``.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional
from urllib.parse import parse_qsl, urlsplit

from pydantic import ValidationError

from .exceptions import RequestNormalizationError
from .models import ImageHandlerEvent

OBJECT_LAMBDA_QUERY_PREFIX = "ol-"
DEFAULT_PATH_PREFIX = "/image"


class EventKind(str, Enum):
    PROXY = "proxy"
    OBJECT_LAMBDA_GET = "object_lambda_get"
    OBJECT_LAMBDA_HEAD = "object_lambda_head"


@dataclass(frozen=True)
class NormalizedEvent:
    """A normalised event plus what the delivery layer needs from the raw one."""

    kind: EventKind
    event: ImageHandlerEvent
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def is_object_lambda(self) -> bool:
        return self.kind is not EventKind.PROXY

    @property
    def is_head(self) -> bool:
        return self.kind is EventKind.OBJECT_LAMBDA_HEAD

    @property
    def output_route(self) -> Optional[str]:
        return (self.raw.get("getObjectContext") or {}).get("outputRoute")

    @property
    def output_token(self) -> Optional[str]:
        return (self.raw.get("getObjectContext") or {}).get("outputToken")


def is_s3_upload_event(event: Any) -> bool:
    """True for an S3 bucket notification (first record from ``aws:s3``)."""
    if not isinstance(event, dict):
        return False
    records = event.get("Records")
    if not isinstance(records, list) or not records:
        return False
    first = records[0]
    return isinstance(first, dict) and first.get("eventSource") == "aws:s3"


def strip_object_lambda_prefix(name: str) -> str:
    if name.startswith(OBJECT_LAMBDA_QUERY_PREFIX):
        return name[len(OBJECT_LAMBDA_QUERY_PREFIX):]
    return name


def extract_object_lambda_query_params(query: Optional[str]) -> Dict[str, str]:
    """
    Parse a query string, dropping the ``ol-`` prefix from parameter names.

    S3 Object Lambda refuses some parameters such as ``signature`` and
    ``expires``; clients send them as ``ol-signature`` / ``ol-expires``.
    """
    if not query:
        return {}
    return {
        strip_object_lambda_prefix(name): value
        for name, value in parse_qsl(query, keep_blank_values=True)
    }


def strip_path_prefix(path: str, prefix: str = DEFAULT_PATH_PREFIX) -> str:
    """Drop everything up to and including the first ``prefix`` occurrence."""
    if not prefix or prefix not in path:
        return path
    return path.split(prefix, 1)[1]


def _object_lambda_event(
    event: Dict[str, Any], path_prefix: str
) -> ImageHandlerEvent:
    user_request = event.get("userRequest")
    if not isinstance(user_request, dict):
        raise RequestNormalizationError("The S3 Object Lambda event has no userRequest.")
    url = user_request.get("url")
    if not isinstance(url, str) or not url.strip():
        raise RequestNormalizationError("The S3 Object Lambda event has no request URL.")

    try:
        parts = urlsplit(url.strip())
    except ValueError as e:
        raise RequestNormalizationError(f"Unparseable request URL: {url}") from e
    if not parts.netloc:
        raise RequestNormalizationError(f"Unparseable request URL: {url}")

    return ImageHandlerEvent(
        path=strip_path_prefix(parts.path, path_prefix),
        query_string_parameters=extract_object_lambda_query_params(parts.query),
        headers=user_request.get("headers") or {},
        request_context={},
    )


def normalize_event(
    event: Dict[str, Any],
    object_lambda_enabled: bool = False,
    path_prefix: str = DEFAULT_PATH_PREFIX,
) -> NormalizedEvent:
    """
    Normalise an inbound request event.

    Args:
        event: Raw Lambda event
        object_lambda_enabled: Whether the deployment fronts S3 Object Lambda
        path_prefix: Origin path prefix carried by Object Lambda URLs

    Returns:
        NormalizedEvent whose kind selects the delivery protocol

    Raises:
        RequestNormalizationError: if the event cannot be parsed
    """
    if not isinstance(event, dict):
        raise RequestNormalizationError("The event must be a JSON object.")

    if object_lambda_enabled or "userRequest" in event:
        kind = (
            EventKind.OBJECT_LAMBDA_GET
            if "getObjectContext" in event
            else EventKind.OBJECT_LAMBDA_HEAD
        )
        return NormalizedEvent(
            kind=kind, event=_object_lambda_event(event, path_prefix), raw=event
        )

    try:
        proxy_event = ImageHandlerEvent.model_validate(event)
    except ValidationError as e:
        raise RequestNormalizationError(f"Invalid proxy event: {e}") from e
    return NormalizedEvent(kind=EventKind.PROXY, event=proxy_event, raw=event)
