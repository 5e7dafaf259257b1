"""Common functions shared across all variant processor implementations."""

from ..core.logging_config import get_logger
from ..core.models import BatchTransformSpec, VariantResult


def error_result(variant: BatchTransformSpec, error: BaseException) -> VariantResult:
    """The ``error`` result recorded for a variant that could not be produced."""
    logger = get_logger("image-handler.processor")
    logger.error(f"Error processing transformation {variant.suffix}: {error}")
    return VariantResult(
        transform_type=variant.suffix,
        status="error",
        error_message=str(error) or "Unknown error during transformation",
    )
