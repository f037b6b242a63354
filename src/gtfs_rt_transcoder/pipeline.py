"""Request orchestrator: fetch, decode and transcode one feed snapshot.

Each invocation walks START -> FETCHING -> DECODING -> TRANSCODING ->
RESPONDING. A failure in any stage jumps straight to RESPONDING with a 500
body; a response is either the complete document or an error, never a
partially decoded feed. Cancellation by the caller is reported to the
hooks as a NetworkError and then re-raised.
"""

import asyncio
import json
import time
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import httpx

from gtfs_rt_transcoder.errors import INTERNAL_ERROR_KIND, NetworkError, TranscoderError
from gtfs_rt_transcoder.fetcher import fetch_feed
from gtfs_rt_transcoder.hooks import PipelineHooks, default_hooks
from gtfs_rt_transcoder.logging import bind_invocation, clear_invocation
from gtfs_rt_transcoder.runtime import Runtime
from gtfs_rt_transcoder.transcoder import DEFAULT_RULES, EncodingRules, to_json

JSON_HEADERS = {"Content-Type": "application/json"}


class Stage(str, Enum):
    """Pipeline states of one invocation."""

    START = "start"
    FETCHING = "fetching"
    DECODING = "decoding"
    TRANSCODING = "transcoding"
    RESPONDING = "responding"


@dataclass
class Invocation:
    """Per-request bookkeeping; never shared between requests."""

    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    cold_start: bool = False
    stage: Stage = Stage.START
    started_at: float = field(default_factory=time.monotonic)
    stage_started_at: float = field(default_factory=time.monotonic)

    def elapsed_seconds(self) -> float:
        return time.monotonic() - self.started_at


@dataclass
class InvocationResponse:
    """Outcome of one invocation in API-Gateway proxy terms."""

    status_code: int
    body: dict[str, Any]
    headers: dict[str, str] = field(default_factory=lambda: dict(JSON_HEADERS))
    error_kind: str | None = None

    @property
    def ok(self) -> bool:
        return self.status_code == 200

    def to_proxy_result(self) -> dict[str, Any]:
        """Render as an API Gateway Lambda proxy result (body as a JSON string)."""
        return {
            "statusCode": self.status_code,
            "headers": dict(self.headers),
            "body": json.dumps(self.body),
        }


def failure_response(
    stage: Stage,
    error_kind: str,
    error: BaseException,
    invocation: Invocation,
    hooks: PipelineHooks,
) -> InvocationResponse:
    """Report a failure to the hooks and build the 500 response."""
    hooks.on_failure(stage, error_kind, error, invocation)
    invocation.stage = Stage.RESPONDING
    return InvocationResponse(
        status_code=500,
        body={"message": f"Error fetching feed data: {error_kind} during {stage.value}"},
        error_kind=error_kind,
    )


class FeedPipeline:
    """Runs invocations against an initialized Runtime."""

    def __init__(
        self,
        runtime: Runtime,
        client: httpx.AsyncClient,
        hooks: PipelineHooks | None = None,
        rules: EncodingRules = DEFAULT_RULES,
    ) -> None:
        self.runtime = runtime
        self.client = client
        self.hooks = hooks if hooks is not None else default_hooks()
        self.rules = rules

    def _enter(self, invocation: Invocation, stage: Stage) -> None:
        invocation.stage = stage
        invocation.stage_started_at = time.monotonic()
        self.hooks.on_stage_start(stage, invocation)

    def _leave(self, invocation: Invocation, details: Mapping[str, Any]) -> None:
        duration = time.monotonic() - invocation.stage_started_at
        self.hooks.on_stage_end(invocation.stage, invocation, duration, details)

    async def invoke(self, invocation: Invocation | None = None) -> InvocationResponse:
        """Run one fetch -> decode -> transcode cycle.

        Args:
            invocation: Request context; a fresh one is created when omitted.

        Returns:
            200 with ``{"jsonData": ...}`` or 500 with ``{"message": ...}``.
        """
        invocation = invocation or Invocation()
        settings = self.runtime.settings
        bind_invocation(invocation.request_id, invocation.cold_start)
        self.hooks.on_start(invocation)

        try:
            self._enter(invocation, Stage.FETCHING)
            fetched = await fetch_feed(
                self.client,
                str(settings.endpoint_url),
                self.runtime.credential,
                header_name=settings.credential_header,
                timeout_seconds=settings.fetch_timeout_seconds,
            )
            self._leave(
                invocation,
                {"status_code": fetched.status_code, "content_length": fetched.content_length},
            )

            self._enter(invocation, Stage.DECODING)
            message = self.runtime.decoder.decode(fetched.content, self.runtime.root_type)
            details: dict[str, Any] = {"message_type": message.descriptor.full_name}
            if message.descriptor.field_by_name("entity") is not None:
                details["entity_count"] = len(message.get("entity"))
            self._leave(invocation, details)

            self._enter(invocation, Stage.TRANSCODING)
            document = to_json(message, self.runtime.registry, self.rules)
            self._leave(invocation, {})

            invocation.stage = Stage.RESPONDING
            self.hooks.on_success(invocation, invocation.elapsed_seconds())
            return InvocationResponse(status_code=200, body={"jsonData": document})

        except TranscoderError as e:
            return failure_response(invocation.stage, e.kind, e, invocation, self.hooks)
        except asyncio.CancelledError as e:
            # The caller aborted mid-fetch; report it, then let the cancellation through
            aborted = NetworkError("cancelled", "invocation aborted by caller")
            aborted.__cause__ = e
            failure_response(invocation.stage, aborted.kind, aborted, invocation, self.hooks)
            raise
        except Exception as e:
            return failure_response(
                invocation.stage, INTERNAL_ERROR_KIND, e, invocation, self.hooks
            )
        finally:
            clear_invocation()
