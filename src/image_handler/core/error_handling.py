# src/image_handler/core/error_handling.py

import functools
import logging
from contextlib import contextmanager
from typing import Iterator, Type

from botocore.exceptions import BotoCoreError, ClientError
from PIL import Image, UnidentifiedImageError

from .exceptions import ImageHandlerError, S3Error

NOT_FOUND_ERROR_CODES = ("404", "NoSuchKey", "NotFound")

# Errors the image engine raises for bad input or impossible operations.
ENGINE_ERRORS = (
    OSError,
    KeyError,
    ValueError,
    TypeError,
    SyntaxError,
    ZeroDivisionError,
    UnidentifiedImageError,
    Image.DecompressionBombError,
)


def client_error_code(error: Exception) -> str:
    """Return the AWS error code carried by a botocore ClientError, or ''."""
    if isinstance(error, ClientError):
        return str(error.response.get("Error", {}).get("Code", ""))
    return ""


def is_not_found(error: Exception) -> bool:
    return client_error_code(error) in NOT_FOUND_ERROR_CODES


@contextmanager
def engine_errors_as(
    error_cls: Type[ImageHandlerError], operation: str
) -> Iterator[None]:
    """
    Translate image engine failures raised inside the block into ``error_cls``.

    Errors that already belong to the handler hierarchy pass through
    untouched so the most specific classification wins.
    """
    logger = logging.getLogger("image-handler." + operation)
    try:
        yield
    except ImageHandlerError:
        raise
    except ENGINE_ERRORS as e:
        logger.error(f"Error in '{operation}': {e}", exc_info=True)
        raise error_cls() from e


def with_s3_error_handling(func):
    """
    A decorator for async S3 calls that turns botocore failures into S3Error.

    Not-found client errors are re-raised unchanged so callers can branch on
    them with ``is_not_found``.
    """

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        logger = logging.getLogger(func.__module__ + "." + func.__name__)
        try:
            return await func(*args, **kwargs)
        except ClientError as e:
            if is_not_found(e):
                raise
            logger.error(f"S3 operation '{func.__name__}' failed: {e}")
            raise S3Error(f"S3 operation failed in {func.__name__}: {e}") from e
        except BotoCoreError as e:
            logger.error(f"S3 operation '{func.__name__}' failed: {e}")
            raise S3Error(f"S3 operation failed in {func.__name__}: {e}") from e

    return wrapper


class BatchOperationContextManager:
    """
    Context manager for batch operations to collect and summarize errors.
    """

    def __init__(self, operation_name="Batch Operation"):
        self.operation_name = operation_name
        self.errors = []
        self.logger = logging.getLogger(
            self.__class__.__module__ + "." + self.__class__.__name__
        )

    def __enter__(self):
        self.logger.info(f"Starting {self.operation_name}.")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.errors:
            self.logger.warning(
                f"{self.operation_name} completed with {len(self.errors)} error(s)."
            )
            for i, error_detail in enumerate(self.errors):
                item_identifier = error_detail.get("item", "Unknown item")
                error_message = error_detail.get("error", "Unknown error")
                self.logger.error(
                    f"  Error {i+1}/{len(self.errors)} for item '{item_identifier}': {error_message}"
                )
        elif exc_type:
            self.logger.error(
                f"{self.operation_name} failed due to an unhandled exception: {exc_val}",
                exc_info=(exc_type, exc_val, exc_tb),
            )
        else:
            self.logger.info(f"{self.operation_name} completed successfully.")

        # Exceptions not reported through add_error propagate.
        return False

    @property
    def error_count(self) -> int:
        return len(self.errors)

    def add_error(self, error_message: str, item_identifier: str = "Unknown item"):
        """
        Call this method within the 'with' block to report an error for a specific item.

        Args:
            error_message (str): The error message or exception string.
            item_identifier (str): A string identifying the item that failed (e.g., variant suffix, key).
        """
        self.errors.append({"item": item_identifier, "error": str(error_message)})
        self.logger.debug(
            f"Error added for item '{item_identifier}' in {self.operation_name}: {error_message}"
        )
