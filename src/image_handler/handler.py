"""Lambda entry point for the image handler."""

import asyncio
from typing import Any, Dict, Optional

from .core.config import HandlerConfig
from .core.exceptions import ImageHandlerError
from .core.factories import HandlerComponents, HandlerFactory
from .core.logging_config import configure_lambda_logging
from .core.models import ImageHandlerEvent
from .core.normalizer import EventKind, NormalizedEvent, is_s3_upload_event, normalize_event
from .core.response import WriteBackDelivery, error_result, select_delivery


def remaining_time_ms(context: Any) -> Optional[int]:
    if context is None or not hasattr(context, "get_remaining_time_in_millis"):
        return None
    return context.get_remaining_time_in_millis()


async def dispatch(
    event: Dict[str, Any], context: Any, components: HandlerComponents
) -> Optional[Dict[str, Any]]:
    """
    Route one event through the handler components.

    Upload notifications go to the batch controller; every other event is
    normalised, processed and delivered with the protocol its kind selects.
    """
    config = components.config
    logger = components.logger

    if is_s3_upload_event(event):
        logger.info("Received S3 upload event", records=len(event["Records"]))
        return await components.batch_controller.handle(event)

    try:
        normalized = normalize_event(event, config.enable_s3_object_lambda)
    except ImageHandlerError as e:
        logger.error(f"Could not normalise the request: {e}")
        result = error_result(e, config)
        if isinstance(event, dict) and isinstance(event.get("getObjectContext"), dict):
            # The GetObject caller only hears back through WriteGetObjectResponse.
            failed = NormalizedEvent(EventKind.OBJECT_LAMBDA_GET, ImageHandlerEvent(), raw=event)
            delivery = WriteBackDelivery(
                components.request_processor, components.s3_client, config, logger
            )
            await delivery.write(failed, result)
            return None
        return result.to_proxy_response()

    logger.info(
        f"Path: {normalized.event.path}",
        query=normalized.event.query_string_parameters,
    )
    delivery = select_delivery(
        normalized,
        components.request_processor,
        components.s3_client,
        config,
        logger,
    )
    try:
        return await delivery.deliver(normalized, remaining_time_ms(context))
    finally:
        if components.metrics_collector is not None:
            logger.info("Request metrics", **components.metrics_collector.get_summary())


async def async_handler(
    event: Dict[str, Any],
    context: Any = None,
    config: Optional[HandlerConfig] = None,
) -> Optional[Dict[str, Any]]:
    config = config or HandlerConfig.from_env()
    async with HandlerFactory.aws_clients(config) as (s3_client, table, region):
        components = HandlerFactory.create_components(
            config, s3_client, table, region=region
        )
        return await dispatch(event, context, components)


def handler(event: Dict[str, Any], context: Any = None) -> Optional[Dict[str, Any]]:
    """AWS Lambda handler."""
    configure_lambda_logging()
    return asyncio.run(async_handler(event, context))
