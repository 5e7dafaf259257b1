"""Factory classes for creating configured service instances."""

from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional, Tuple

import aioboto3

from ..processors import create_variant_processor
from .batch import BatchIngestionController
from .cache import ArtifactCache, MetadataStore
from .config import HandlerConfig
from .observability import (
    LogLevel,
    MetricsCollector,
    create_logger,
    create_metrics_collector,
)
from .pipeline import EditPipeline
from .protocols import (
    LoggerProtocol,
    MetadataTableProtocol,
    RequestDecoderProtocol,
    S3ClientProtocol,
)
from .request import DefaultRequestDecoder
from .response import RequestProcessor
from .services import ImageHandler

DEFAULT_REGION = "us-east-1"


@dataclass
class HandlerComponents:
    """Everything one invocation needs, wired together."""

    config: HandlerConfig
    logger: LoggerProtocol
    s3_client: S3ClientProtocol
    pipeline: EditPipeline
    image_handler: ImageHandler
    request_processor: RequestProcessor
    batch_controller: BatchIngestionController
    metadata_store: Optional[MetadataStore] = None
    metrics_collector: Optional[MetricsCollector] = None


class LoggerFactory:
    """Factory for creating logger instances."""

    @staticmethod
    def create_logger(name: str = "image-handler", level: LogLevel = LogLevel.INFO) -> LoggerProtocol:
        return create_logger(name, level)


class HandlerFactory:
    """Factory for the AWS clients and the complete handler object graph."""

    @staticmethod
    @asynccontextmanager
    async def aws_clients(
        config: HandlerConfig, session: Optional[Any] = None
    ) -> AsyncIterator[Tuple[Any, Optional[Any], str]]:
        """
        Open the S3 client and the metadata table for one invocation.

        Yields:
            (s3_client, metadata_table, region)
        """
        session = session or aioboto3.Session()
        region = session.region_name or DEFAULT_REGION
        async with AsyncExitStack() as stack:
            s3_client = await stack.enter_async_context(session.client("s3"))
            table = None
            if config.metadata_table_name:
                dynamodb = await stack.enter_async_context(session.resource("dynamodb"))
                table = await dynamodb.Table(config.metadata_table_name)
            yield s3_client, table, region

    @staticmethod
    def create_components(
        config: HandlerConfig,
        s3_client: S3ClientProtocol,
        metadata_table: Optional[MetadataTableProtocol] = None,
        logger: Optional[LoggerProtocol] = None,
        decoder: Optional[RequestDecoderProtocol] = None,
        region: str = DEFAULT_REGION,
    ) -> HandlerComponents:
        """Create a fully configured handler from explicit dependencies."""

        # Create default dependencies if not provided
        if logger is None:
            logger = LoggerFactory.create_logger("image-handler")
        if decoder is None:
            decoder = DefaultRequestDecoder(s3_client, config, logger)

        metadata_store = (
            MetadataStore(metadata_table, logger) if metadata_table is not None else None
        )
        metrics_collector = create_metrics_collector(config.enable_metrics)

        cache = None
        if config.enable_cache:
            if config.output_bucket and metadata_store is not None:
                cache = ArtifactCache(s3_client, config.output_bucket, metadata_store, logger)
            else:
                logger.warning(
                    "ENABLE_CACHE is set but no output bucket or metadata table is "
                    "configured; caching is disabled."
                )

        # Create services
        pipeline = EditPipeline()
        image_handler = ImageHandler(
            pipeline=pipeline,
            logger=logger,
            cache=cache,
            metrics_collector=metrics_collector,
        )
        request_processor = RequestProcessor(
            decoder=decoder,
            image_handler=image_handler,
            pipeline=pipeline,
            s3_client=s3_client,
            config=config,
            logger=logger,
        )
        batch_controller = BatchIngestionController(
            s3_client=s3_client,
            image_handler=image_handler,
            variant_processor=create_variant_processor(config.variant_concurrency),
            config=config,
            logger=logger,
            metadata_store=metadata_store,
            region=region,
        )

        return HandlerComponents(
            config=config,
            logger=logger,
            s3_client=s3_client,
            pipeline=pipeline,
            image_handler=image_handler,
            request_processor=request_processor,
            batch_controller=batch_controller,
            metadata_store=metadata_store,
            metrics_collector=metrics_collector,
        )
