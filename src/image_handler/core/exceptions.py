"""Custom exceptions for the image handler."""

from __future__ import annotations

import json
from typing import Any, Dict


class StatusCodes:
    """HTTP-style status codes surfaced by the handler."""

    OK = 200
    BAD_REQUEST = 400
    FORBIDDEN = 403
    NOT_FOUND = 404
    REQUEST_TOO_LONG = 413
    INTERNAL_SERVER_ERROR = 500
    TIMEOUT = 504


class ImageHandlerPipelineError(Exception):
    """Base exception for all image handler errors."""


class S3Error(ImageHandlerPipelineError):
    """Error raised for S3 related failures."""


class ConfigurationError(ImageHandlerPipelineError):
    """Error raised for invalid or missing configuration options."""


class ImageHandlerError(ImageHandlerPipelineError):
    """Error with a stable machine-readable code and an HTTP-style status.

    Every externally visible failure of a request is one of these; the
    response builder turns ``to_dict()`` into the error body.
    """

    status: int = StatusCodes.INTERNAL_SERVER_ERROR
    code: str = "InternalError"
    default_message: str = "Internal error. Please contact the system administrator."

    def __init__(
        self,
        message: str | None = None,
        *,
        status: int | None = None,
        code: str | None = None,
    ) -> None:
        self.message = message or self.default_message
        if status is not None:
            self.status = status
        if code is not None:
            self.code = code
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"status": self.status, "code": self.code, "message": self.message}

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


class ImageFormatNotSupported(ImageHandlerError):
    status = StatusCodes.BAD_REQUEST
    code = "ImageFormatNotSupported"
    default_message = "The requested image format is not supported."


class InvalidImageEdits(ImageHandlerError):
    status = StatusCodes.BAD_REQUEST
    code = "ImageEdits::InvalidEdits"
    default_message = "The requested image edits are not valid."


class ImageProcessingError(ImageHandlerError):
    status = StatusCodes.INTERNAL_SERVER_ERROR
    code = "ImageProcessingError"
    default_message = "Error occurred during image metadata processing."


class ImageEditsError(ImageHandlerError):
    status = StatusCodes.INTERNAL_SERVER_ERROR
    code = "ImageEditsError"
    default_message = "Error occurred while applying edits to the image."


class ImageFormatError(ImageHandlerError):
    status = StatusCodes.INTERNAL_SERVER_ERROR
    code = "ImageFormatError"
    default_message = "Error occurred while converting the image to the desired format."


class TooLargeImageException(ImageHandlerError):
    status = StatusCodes.REQUEST_TOO_LONG
    code = "TooLargeImageException"
    default_message = "The converted image is too large to return."


class TimeoutException(ImageHandlerError):
    status = StatusCodes.TIMEOUT
    code = "TimeoutException"
    default_message = "Image processing timed out."


class S3ObjectLambdaWriteError(ImageHandlerError):
    status = StatusCodes.BAD_REQUEST
    code = "S3ObjectLambdaWriteError"
    default_message = "It was not possible to write the response to S3 Object Lambda."


class RequestNormalizationError(ImageHandlerError):
    status = StatusCodes.BAD_REQUEST
    code = "RequestNormalizationError"
    default_message = "The inbound request could not be parsed."

