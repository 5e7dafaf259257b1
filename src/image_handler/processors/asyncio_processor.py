"""AsyncIO processor implementation - produces variants concurrently."""

import asyncio
from typing import Any, List

from ..core.logging_config import get_logger
from ..core.models import BatchTransformSpec, VariantResult
from ..core.protocols import VariantProcessor
from .common import error_result


class AsyncioVariantProcessor(VariantProcessor):
    """
    Produces variants concurrently, at most ``max_concurrency`` at a time.

    The semaphore bounds how many decoded copies of the image exist at once.
    Results keep the order of ``variants``.
    """

    def __init__(self, max_concurrency: int = 2):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.max_concurrency = max_concurrency

    async def process_variants(
        self,
        image_bytes: bytes,
        variants: List[BatchTransformSpec],
        produce: Any,
    ) -> List[VariantResult]:
        logger = get_logger("image-handler.asyncio-processor")
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def bounded(variant: BatchTransformSpec) -> VariantResult:
            async with semaphore:
                logger.debug(f"[{variant.suffix}] Producing variant")
                return await produce(image_bytes, variant)

        results = await asyncio.gather(
            *(bounded(variant) for variant in variants), return_exceptions=True
        )

        # Convert exceptions to error results
        processed_results: List[VariantResult] = []
        for variant, result in zip(variants, results):
            if isinstance(result, Exception):
                processed_results.append(error_result(variant, result))
            elif isinstance(result, BaseException):
                raise result
            else:
                processed_results.append(result)
        return processed_results
