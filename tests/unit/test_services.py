"""Unit tests for the image processing orchestrator."""

import asyncio
import io
import time

import pytest
from PIL import Image

from image_handler.core.cache import ArtifactCache, MetadataStore
from image_handler.core.exceptions import ImageFormatNotSupported, ImageProcessingError
from image_handler.core.models import CanonicalRequest, ImageFormat
from image_handler.core.observability import MetricsCollector
from image_handler.core.pipeline import EditPipeline
from image_handler.core.services import ImageHandler
from image_handler.testing import (
    FakeLogger,
    FakeMetadataTable,
    create_test_image,
    setup_test_s3_environment,
)


class SpyPipeline(EditPipeline):
    """EditPipeline that counts calls and can be slowed down."""

    def __init__(self, delay: float = 0.0):
        self.apply_calls = 0
        self.format_calls = 0
        self.delay = delay

    def apply(self, data, edits):
        self.apply_calls += 1
        if self.delay:
            time.sleep(self.delay)
        return super().apply(data, edits)

    def format(self, data, source_format, target_format):
        self.format_calls += 1
        return super().format(data, source_format, target_format)


def make_request(edits=None, output_format=None, raw_image=None, content_type="image/jpeg"):
    return CanonicalRequest(
        source_bucket="test-source",
        source_key="photos/photo1.jpg",
        edits=edits,
        output_format=output_format,
        raw_image=raw_image if raw_image is not None else create_test_image(200, 150),
        declared_content_type=content_type,
    )


@pytest.fixture
def s3_client():
    return setup_test_s3_environment()


@pytest.fixture
def table():
    return FakeMetadataTable()


@pytest.fixture
def logger():
    return FakeLogger()


@pytest.fixture
def cache(s3_client, table, logger):
    return ArtifactCache(s3_client, "test-output", MetadataStore(table, logger), logger)


class TestImageHandlerWithoutCache:
    """Tests for ImageHandler.process with no cache configured."""

    def test_no_edits_returns_source_bytes(self, logger):
        pipeline = SpyPipeline()
        handler = ImageHandler(pipeline, logger)
        request = make_request()

        assert asyncio.run(handler.process(request)) == request.raw_image
        assert pipeline.apply_calls == 0
        assert pipeline.format_calls == 0

    def test_edits_are_applied(self, logger):
        pipeline = SpyPipeline()
        handler = ImageHandler(pipeline, logger)

        body = asyncio.run(handler.process(make_request(edits={"resize": {"width": 100}})))

        info = pipeline.probe(body)
        assert (info.width, info.height) == (100, 75)
        assert info.format == "jpeg"
        assert pipeline.apply_calls == 1

    def test_output_format_conversion(self, logger):
        pipeline = SpyPipeline()
        handler = ImageHandler(pipeline, logger)

        body = asyncio.run(handler.process(make_request(output_format="png")))

        assert pipeline.probe(body).format == "png"
        assert pipeline.format_calls == 1

    def test_format_block_matching_output_skips_conversion(self, logger):
        pipeline = SpyPipeline()
        handler = ImageHandler(pipeline, logger)
        request = make_request(edits={"webp": {"quality": 60}}, output_format="webp")

        body = asyncio.run(handler.process(request))

        assert pipeline.probe(body).format == "webp"
        assert pipeline.format_calls == 0

    def test_unsupported_declared_type(self, logger):
        handler = ImageHandler(SpyPipeline(), logger)
        with pytest.raises(ImageFormatNotSupported) as exc_info:
            asyncio.run(handler.process(make_request(content_type="image/bmp")))
        assert exc_info.value.status == 400

    def test_unsupported_probed_format(self, logger):
        buffer = io.BytesIO()
        Image.new("RGB", (8, 8)).save(buffer, format="BMP")
        handler = ImageHandler(SpyPipeline(), logger)
        request = make_request(raw_image=buffer.getvalue(), content_type=None)

        with pytest.raises(ImageFormatNotSupported):
            asyncio.run(handler.process(request))

    def test_binary_content_type_is_probed(self, logger):
        handler = ImageHandler(SpyPipeline(), logger)
        request = make_request(
            edits={"flip": True}, content_type="application/octet-stream"
        )
        body = asyncio.run(handler.process(request))
        assert body[:2] == b"\xff\xd8"

    def test_empty_image_is_rejected(self, logger):
        handler = ImageHandler(SpyPipeline(), logger)
        with pytest.raises(ImageProcessingError):
            asyncio.run(handler.process(make_request(raw_image=b"")))

    def test_concurrent_identical_requests_compute_once(self, logger):
        pipeline = SpyPipeline(delay=0.2)
        handler = ImageHandler(pipeline, logger)
        request = make_request(edits={"grayscale": True})

        async def run_both():
            return await asyncio.gather(handler.process(request), handler.process(request))

        first, second = asyncio.run(run_both())
        assert first == second
        assert pipeline.apply_calls == 1

    def test_metrics_are_recorded(self, logger):
        collector = MetricsCollector()
        handler = ImageHandler(SpyPipeline(), logger, metrics_collector=collector)

        asyncio.run(handler.process(make_request()))
        with pytest.raises(ImageFormatNotSupported):
            asyncio.run(handler.process(make_request(content_type="image/bmp")))

        summary = collector.get_summary("process")
        assert summary["total_operations"] == 2
        assert summary["failed_operations"] == 1


class TestImageHandlerWithCache:
    """Tests for the fingerprint cache path of ImageHandler.process."""

    def test_result_is_stored(self, logger, cache, s3_client, table):
        handler = ImageHandler(SpyPipeline(), logger, cache=cache)
        request = make_request(edits={"resize": {"width": 50}}, output_format="webp")

        body = asyncio.run(handler.process(request))

        stored = list(s3_client.get_bucket("test-output").objects.values())
        assert len(stored) == 1
        assert stored[0].body == body
        assert stored[0].key.startswith("photo1-") and stored[0].key.endswith(".webp")
        assert stored[0].content_type == "image/webp"
        assert stored[0].metadata["source-key"] == "photos/photo1.jpg"

        record = table.items[stored[0].key]
        assert record["processingStatus"] == "processed"
        assert record["width"] == 50

    def test_cache_hit_skips_pipeline(self, logger, cache, table):
        """A repeated request is served from the cache and bumps the access count."""
        pipeline = SpyPipeline()
        handler = ImageHandler(pipeline, logger, cache=cache)
        request = make_request(edits={"grayscale": True}, output_format="png")

        first = asyncio.run(handler.process(request))
        second = asyncio.run(handler.process(request))

        assert first == second
        assert pipeline.apply_calls == 1
        assert pipeline.format_calls == 1
        (record,) = table.items.values()
        assert record["accessCount"] == 1
        assert "lastAccessed" in record

    def test_different_edits_are_different_artifacts(self, logger, cache, s3_client):
        handler = ImageHandler(SpyPipeline(), logger, cache=cache)
        asyncio.run(handler.process(make_request(edits={"grayscale": True})))
        asyncio.run(handler.process(make_request(edits={"flip": True})))
        assert len(s3_client.get_bucket("test-output").objects) == 2

    def test_cache_key_uses_jpg_without_output_format(self, logger, cache, s3_client):
        handler = ImageHandler(SpyPipeline(), logger, cache=cache)
        asyncio.run(handler.process(make_request(edits={"flip": True})))
        (key,) = s3_client.get_bucket("test-output").objects
        assert key.endswith(".jpg")

    def test_store_failure_does_not_fail_request(self, logger, cache, s3_client, table):
        s3_client.fail_next("put_object")
        handler = ImageHandler(SpyPipeline(), logger, cache=cache)

        body = asyncio.run(handler.process(make_request(edits={"flip": True})))

        assert body
        assert s3_client.get_bucket("test-output").objects == {}
        (record,) = table.items.values()
        assert record["processingStatus"] == "failed"
        assert logger.get_logs("ERROR")

    def test_cache_lookup_failure_falls_through(self, logger, cache, s3_client):
        s3_client.fail_next("head_object")
        pipeline = SpyPipeline()
        handler = ImageHandler(pipeline, logger, cache=cache)

        body = asyncio.run(handler.process(make_request(edits={"flip": True})))

        assert body
        assert pipeline.apply_calls == 1
        assert logger.get_logs("WARNING")

    def test_unsupported_format_stores_nothing(self, logger, cache, s3_client, table):
        handler = ImageHandler(SpyPipeline(), logger, cache=cache)
        with pytest.raises(ImageFormatNotSupported):
            asyncio.run(
                handler.process(make_request(edits={"flip": True}, content_type="image/bmp"))
            )
        assert s3_client.calls_to("put_object") == []
        assert table.items == {}

    def test_output_format_enum_accepted(self, logger, cache):
        handler = ImageHandler(SpyPipeline(), logger, cache=cache)
        body = asyncio.run(handler.process(make_request(output_format=ImageFormat.PNG)))
        assert body[:8] == b"\x89PNG\r\n\x1a\n"
