"""Response builder and delivery.

``RequestProcessor`` turns a normalised event into an ``ExecutionResult``.
A ``ResponseDelivery`` finishes the invocation with it: ``DirectDelivery``
returns the proxy response, ``WriteBackDelivery`` pushes it to S3 Object
Lambda with ``WriteGetObjectResponse`` under a timeout race.
"""

import asyncio
import base64
import json
from typing import Any, Dict, Optional
from urllib.parse import quote

from .cache import read_object_body
from .config import (
    DEFAULT_FALLBACK_CACHE_CONTROL,
    DIRECT_RESPONSE_LIMIT_BYTES,
    WRITE_BACK_SAFETY_MARGIN_MS,
    HandlerConfig,
)
from .exceptions import (
    ImageHandlerError,
    S3ObjectLambdaWriteError,
    StatusCodes,
    TimeoutException,
    TooLargeImageException,
)
from .models import CanonicalRequest, ExecutionResult, ImageHandlerEvent
from .normalizer import NormalizedEvent
from .pipeline import EditPipeline
from .protocols import (
    ImageProcessorProtocol,
    LoggerProtocol,
    RequestDecoderProtocol,
    ResponseDelivery,
    S3ClientProtocol,
)
from .request import http_date

INTERNAL_ERROR_BODY = {
    "message": "Internal error. Please contact the system administrator.",
    "code": "InternalError",
    "status": StatusCodes.INTERNAL_SERVER_ERROR,
}
CLIENT_ERROR_CACHE_CONTROL = "max-age=10,public"
SERVER_ERROR_CACHE_CONTROL = "max-age=600,public"

# Characters encodeURI leaves untouched besides letters and digits.
_URI_SAFE = ";,/?:@&=+$-_.!~*'()#"


def response_headers(
    config: HandlerConfig, is_error: bool = False, is_alb: bool = False
) -> Dict[str, Any]:
    """CORS and content headers shared by every response."""
    headers: Dict[str, Any] = {
        "Access-Control-Allow-Methods": "GET",
        "Access-Control-Allow-Headers": "Content-Type, Authorization",
    }
    if not is_alb:
        headers["Access-Control-Allow-Credentials"] = "true"
    if config.cors_enabled:
        headers["Access-Control-Allow-Origin"] = config.cors_origin
    if is_error:
        headers["Content-Type"] = "application/json"
    return headers


def error_response(error: BaseException) -> Dict[str, Any]:
    """Status code and JSON body for an error; unknown errors never leak detail."""
    if isinstance(error, ImageHandlerError):
        return {"status_code": error.status, "body": error.to_json()}
    return {
        "status_code": StatusCodes.INTERNAL_SERVER_ERROR,
        "body": json.dumps(INTERNAL_ERROR_BODY),
    }


def error_result(
    error: BaseException, config: HandlerConfig, is_alb: bool = False
) -> ExecutionResult:
    response = error_response(error)
    return ExecutionResult(
        status_code=response["status_code"],
        headers=response_headers(config, is_error=True, is_alb=is_alb),
        body=response["body"],
        is_base64_encoded=False,
    )


def sanitize_headers(result: ExecutionResult) -> Dict[str, str]:
    """
    Header policy for write-back responses.

    Headers without a value are dropped, the rest are percent-encoded the
    way ``encodeURI`` does with spaces kept literal, and error statuses get
    a fixed Cache-Control.
    """
    headers = {
        name: quote(str(value), safe=_URI_SAFE).replace("%20", " ")
        for name, value in result.headers.items()
        if value is not None
    }
    if 400 <= result.status_code <= 499:
        headers["Cache-Control"] = CLIENT_ERROR_CACHE_CONTROL
    elif 500 <= result.status_code < 599:
        headers["Cache-Control"] = SERVER_ERROR_CACHE_CONTROL
    return headers


def _body_bytes(body: Any) -> bytes:
    return body.encode("utf-8") if isinstance(body, str) else bytes(body)


def write_response_params(
    normalized: NormalizedEvent, result: ExecutionResult, headers: Dict[str, str]
) -> Dict[str, Any]:
    """Arguments of ``WriteGetObjectResponse`` for an execution result."""
    headers = dict(headers)
    params: Dict[str, Any] = {
        "Body": _body_bytes(result.body),
        "RequestRoute": normalized.output_route,
        "RequestToken": normalized.output_token,
    }
    cache_control = headers.pop("Cache-Control", None)
    if cache_control:
        params["CacheControl"] = cache_control
    params["Metadata"] = {"StatusCode": json.dumps(result.status_code), **headers}
    return params


def error_response_params(
    normalized: NormalizedEvent, error: ImageHandlerError
) -> Dict[str, Any]:
    response = error_response(error)
    return {
        "RequestRoute": normalized.output_route,
        "RequestToken": normalized.output_token,
        "Body": response["body"].encode("utf-8"),
        "Metadata": {"StatusCode": json.dumps(response["status_code"])},
        "CacheControl": CLIENT_ERROR_CACHE_CONTROL,
    }


class RequestProcessor:
    """Builds the execution result for one request."""

    def __init__(
        self,
        decoder: RequestDecoderProtocol,
        image_handler: ImageProcessorProtocol,
        pipeline: EditPipeline,
        s3_client: S3ClientProtocol,
        config: HandlerConfig,
        logger: LoggerProtocol,
    ):
        self._decoder = decoder
        self._image_handler = image_handler
        self._pipeline = pipeline
        self._s3_client = s3_client
        self._config = config
        self._logger = logger

    async def execute(self, event: ImageHandlerEvent, write_back: bool = False) -> ExecutionResult:
        """
        Decode, process and package one request.

        Direct responses are base64-encoded and limited in size; write-back
        responses carry the raw bytes. Any failure becomes an error result,
        or the fallback image when one is configured.
        """
        try:
            request = await self._decoder.decode(event)
            body = await self._image_handler.process(request)

            payload: Any = body
            if not write_back:
                payload = base64.b64encode(body).decode("ascii")
                if len(payload) > DIRECT_RESPONSE_LIMIT_BYTES:
                    raise TooLargeImageException()

            return ExecutionResult(
                status_code=StatusCodes.OK,
                headers=await self._success_headers(event, request, body),
                body=payload,
                is_base64_encoded=not write_back,
            )
        except Exception as error:
            self._logger.error(f"Error processing request: {error}", path=event.path)
            if self._config.fallback_image_configured:
                try:
                    return await self._fallback(event, error, write_back)
                except Exception as fallback_error:
                    self._logger.error(
                        "Error occurred while getting the default fallback image.",
                        error=str(fallback_error),
                    )
            return error_result(error, self._config, is_alb=event.is_alb)

    async def _success_headers(
        self, event: ImageHandlerEvent, request: CanonicalRequest, body: bytes
    ) -> Dict[str, Any]:
        headers: Dict[str, Any] = {"Cache-Control": request.cache_control}
        if request.headers:
            headers.update(request.headers)
        if request.seconds_to_expiry is not None:
            headers["Cache-Control"] = f"max-age={request.seconds_to_expiry},public"

        headers.update(response_headers(self._config, is_alb=event.is_alb))
        headers["Content-Type"] = await self._content_type(request, body)
        headers["Expires"] = request.expires
        headers["Last-Modified"] = request.last_modified
        return headers

    async def _content_type(self, request: CanonicalRequest, body: bytes) -> str:
        try:
            info = await asyncio.to_thread(self._pipeline.probe, body)
            if info.image_format is not None:
                return info.image_format.content_type
        except ImageHandlerError:
            self._logger.debug("Could not probe the response body")
        if request.output_format is not None:
            return request.output_format.content_type
        return request.declared_content_type or "image/jpeg"

    async def _fallback(
        self, event: ImageHandlerEvent, error: BaseException, write_back: bool
    ) -> ExecutionResult:
        response = await self._s3_client.get_object(
            Bucket=self._config.default_fallback_image_bucket,
            Key=self._config.default_fallback_image_key,
        )
        body = await read_object_body(response)

        headers = response_headers(self._config, is_alb=event.is_alb)
        headers["Content-Type"] = response.get("ContentType")
        headers["Last-Modified"] = http_date(response.get("LastModified"))
        try:
            requested = self._decoder.cache_control_for(event)
        except Exception:
            requested = None
        # Fallback object's own value, then the request's, then one year.
        headers["Cache-Control"] = (
            response.get("CacheControl") or requested or DEFAULT_FALLBACK_CACHE_CONTROL
        )

        status = (
            error.status
            if isinstance(error, ImageHandlerError)
            else StatusCodes.INTERNAL_SERVER_ERROR
        )
        return ExecutionResult(
            status_code=status,
            headers=headers,
            body=body if write_back else base64.b64encode(body).decode("ascii"),
            is_base64_encoded=not write_back,
        )


class DirectDelivery(ResponseDelivery):
    """Returns the proxy response to API Gateway or the load balancer."""

    def __init__(self, processor: RequestProcessor, logger: LoggerProtocol):
        self._processor = processor
        self._logger = logger

    async def deliver(
        self, normalized: NormalizedEvent, remaining_time_ms: Optional[int] = None
    ) -> Dict[str, Any]:
        result = await self._processor.execute(normalized.event, write_back=False)
        return result.to_proxy_response()


class WriteBackDelivery(ResponseDelivery):
    """Answers S3 Object Lambda through ``WriteGetObjectResponse``."""

    def __init__(
        self,
        processor: RequestProcessor,
        s3_client: S3ClientProtocol,
        config: HandlerConfig,
        logger: LoggerProtocol,
    ):
        self._processor = processor
        self._s3_client = s3_client
        self._config = config
        self._logger = logger

    def _timeout_result(self) -> ExecutionResult:
        return error_result(TimeoutException(), self._config)

    async def race(
        self, event: ImageHandlerEvent, remaining_time_ms: Optional[int]
    ) -> ExecutionResult:
        """
        Run the request against a timer that fires shortly before the deadline.

        If the timer wins, processing is cancelled and the timeout error
        result is returned instead. The timer is always cancelled.
        """
        task = asyncio.ensure_future(self._processor.execute(event, write_back=True))
        if remaining_time_ms is None:
            return await task

        delay = max(remaining_time_ms - WRITE_BACK_SAFETY_MARGIN_MS, 0) / 1000
        timer = asyncio.ensure_future(asyncio.sleep(delay))
        try:
            done, _ = await asyncio.wait(
                {task, timer}, return_when=asyncio.FIRST_COMPLETED
            )
            if task in done:
                return task.result()
            self._logger.warning("Image processing timed out", path=event.path)
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            return self._timeout_result()
        finally:
            timer.cancel()

    async def deliver(
        self, normalized: NormalizedEvent, remaining_time_ms: Optional[int] = None
    ) -> Optional[Dict[str, Any]]:
        result = await self.race(normalized.event, remaining_time_ms)
        headers = sanitize_headers(result)

        if normalized.is_head:
            self._logger.info(
                f"No getObjectContext, answering as HeadObject. Status: {result.status_code}"
            )
            headers["Content-Length"] = len(_body_bytes(result.body))
            return {"statusCode": result.status_code, "headers": headers}

        await self.write(normalized, result, headers)
        return None

    async def write(
        self,
        normalized: NormalizedEvent,
        result: ExecutionResult,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        """Send ``result`` with ``WriteGetObjectResponse``, falling back to an error write."""
        if headers is None:
            headers = sanitize_headers(result)
        try:
            await self._s3_client.write_get_object_response(
                **write_response_params(normalized, result, headers)
            )
        except Exception as e:
            self._logger.error(
                "Error occurred while writing the response to S3 Object Lambda.",
                error=str(e),
            )
            try:
                await self._s3_client.write_get_object_response(
                    **error_response_params(normalized, S3ObjectLambdaWriteError())
                )
            except Exception as retry_error:
                self._logger.error(
                    "Could not write the error response to S3 Object Lambda.",
                    error=str(retry_error),
                )


def select_delivery(
    normalized: NormalizedEvent,
    processor: RequestProcessor,
    s3_client: S3ClientProtocol,
    config: HandlerConfig,
    logger: LoggerProtocol,
) -> ResponseDelivery:
    """Pick the delivery protocol once per invocation from the event kind."""
    if normalized.is_object_lambda:
        return WriteBackDelivery(processor, s3_client, config, logger)
    return DirectDelivery(processor, logger)
