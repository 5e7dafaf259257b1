"""Variant processors with different concurrency strategies."""

from ..core.protocols import VariantProcessor
from .asyncio_processor import AsyncioVariantProcessor
from .serial import SerialVariantProcessor


def create_variant_processor(concurrency: int = 1) -> VariantProcessor:
    """Serial processing for a concurrency of one, bounded asyncio otherwise."""
    if concurrency <= 1:
        return SerialVariantProcessor()
    return AsyncioVariantProcessor(max_concurrency=concurrency)


__all__ = [
    "AsyncioVariantProcessor",
    "SerialVariantProcessor",
    "create_variant_processor",
]
