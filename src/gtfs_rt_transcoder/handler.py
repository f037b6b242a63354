"""AWS Lambda entry point (API Gateway proxy integration).

Event doc: https://docs.aws.amazon.com/apigateway/latest/developerguide/set-up-lambda-proxy-integrations.html
"""

import asyncio
import functools
import os
import uuid
from typing import Any

import httpx

from gtfs_rt_transcoder.errors import TranscoderError
from gtfs_rt_transcoder.fetcher import create_http_client
from gtfs_rt_transcoder.hooks import PipelineHooks, default_hooks
from gtfs_rt_transcoder.logging import bind_invocation, clear_invocation, configure_logging
from gtfs_rt_transcoder.pipeline import FeedPipeline, Invocation, Stage, failure_response
from gtfs_rt_transcoder.runtime import claim_cold_start, initialize


@functools.cache
def _setup_logging() -> None:
    configure_logging(os.getenv("LOG_LEVEL", "INFO"), os.getenv("LOG_FORMAT", "json"))


@functools.cache
def _hooks() -> PipelineHooks:
    return default_hooks()


def request_id_from(event: dict[str, Any] | None, context: Any) -> str:
    """Correlation id: Lambda request id, API Gateway request id, or a new UUID."""
    request_id = getattr(context, "aws_request_id", None)
    if request_id:
        return str(request_id)
    request_context = (event or {}).get("requestContext") or {}
    if request_context.get("requestId"):
        return str(request_context["requestId"])
    return str(uuid.uuid4())


async def handle_event(
    event: dict[str, Any] | None,
    context: Any,
    *,
    client: httpx.AsyncClient | None = None,
    hooks: PipelineHooks | None = None,
) -> dict[str, Any]:
    """Serve one invocation and return an API Gateway proxy result.

    Initialization runs on first use. While it fails (missing configuration,
    unreadable schema) every invocation is answered with a 500 and the next
    invocation tries again.

    Args:
        event: API Gateway proxy event; only the request id is used.
        context: Lambda context object.
        client: HTTP client to reuse; a short-lived one is created when omitted.
        hooks: Observability hooks; logging, metrics and tracing when omitted.

    Returns:
        ``{"statusCode", "headers", "body"}`` with a JSON string body.
    """
    hooks = hooks or _hooks()
    request_id = request_id_from(event, context)

    try:
        runtime = await initialize()
    except TranscoderError as e:
        invocation = Invocation(request_id=request_id)
        bind_invocation(request_id, cold_start=False)
        try:
            return failure_response(Stage.START, e.kind, e, invocation, hooks).to_proxy_result()
        finally:
            clear_invocation()

    invocation = Invocation(request_id=request_id, cold_start=claim_cold_start())
    if client is not None:
        response = await FeedPipeline(runtime, client, hooks).invoke(invocation)
    else:
        async with create_http_client() as own_client:
            response = await FeedPipeline(runtime, own_client, hooks).invoke(invocation)
    return response.to_proxy_result()


def lambda_handler(event: dict[str, Any] | None, context: Any) -> dict[str, Any]:
    """Lambda entry point."""
    _setup_logging()
    return asyncio.run(handle_event(event, context))
