"""Serial processor implementation - produces variants one by one."""

from typing import Any, List

from ..core.models import BatchTransformSpec, VariantResult
from ..core.protocols import VariantProcessor
from .common import error_result


class SerialVariantProcessor(VariantProcessor):
    """
    Produces the variants of one upload sequentially.

    Each variant completes, successfully or not, before the next one
    starts, so at most one decoded copy of the image is alive at a time.
    """

    async def process_variants(
        self,
        image_bytes: bytes,
        variants: List[BatchTransformSpec],
        produce: Any,
    ) -> List[VariantResult]:
        results = []

        for variant in variants:
            try:
                result = await produce(image_bytes, variant)
            except Exception as e:
                result = error_result(variant, e)
            results.append(result)

        return results
