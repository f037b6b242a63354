"""Tests for the fetch -> decode -> transcode pipeline."""

import asyncio
import json
from collections.abc import Mapping
from typing import Any

import httpx
import pytest
import respx
from httpx import Response
from prometheus_client import REGISTRY

from gtfs_rt_transcoder.errors import DecodeError, NetworkError
from gtfs_rt_transcoder.fetcher import create_http_client
from gtfs_rt_transcoder.hooks import CompositeHooks, MetricsHooks, PipelineHooks
from gtfs_rt_transcoder.pipeline import FeedPipeline, Invocation, InvocationResponse, Stage
from gtfs_rt_transcoder.runtime import Runtime
from gtfs_rt_transcoder.transcoder import EncodingRules, EnumFormat


class RecordingHooks(PipelineHooks):
    """Collects every callback as (name, stage, extra) tuples."""

    def __init__(self) -> None:
        self.events: list[tuple[str, Any, Any]] = []
        self.errors: list[BaseException] = []

    def on_start(self, invocation: Invocation) -> None:
        self.events.append(("start", invocation.stage, invocation.request_id))

    def on_stage_start(self, stage: Stage, invocation: Invocation) -> None:
        self.events.append(("stage_start", stage, None))

    def on_stage_end(
        self,
        stage: Stage,
        invocation: Invocation,
        duration_seconds: float,
        details: Mapping[str, Any],
    ) -> None:
        assert duration_seconds >= 0
        self.events.append(("stage_end", stage, dict(details)))

    def on_failure(
        self,
        stage: Stage,
        error_kind: str,
        error: BaseException,
        invocation: Invocation,
    ) -> None:
        self.events.append(("failure", stage, error_kind))
        self.errors.append(error)

    def on_success(self, invocation: Invocation, duration_seconds: float) -> None:
        self.events.append(("success", invocation.stage, None))

    def names(self) -> list[str]:
        return [event[0] for event in self.events]


@pytest.fixture
def hooks() -> RecordingHooks:
    return RecordingHooks()


@pytest.fixture
def feed_url(runtime: Runtime) -> str:
    return str(runtime.settings.endpoint_url)


def sample(name: str, labels: dict[str, str] | None = None) -> float:
    return REGISTRY.get_sample_value(name, labels or {}) or 0.0


class TestInvocationResponse:
    """Tests for InvocationResponse rendering."""

    def test_proxy_result(self) -> None:
        """Test the API Gateway proxy shape with a JSON string body."""
        response = InvocationResponse(status_code=200, body={"jsonData": {"entity": []}})

        result = response.to_proxy_result()

        assert result["statusCode"] == 200
        assert result["headers"] == {"Content-Type": "application/json"}
        assert json.loads(result["body"]) == {"jsonData": {"entity": []}}
        assert response.ok is True


class TestFeedPipeline:
    """Tests for FeedPipeline.invoke."""

    @respx.mock
    async def test_success(
        self, runtime: Runtime, hooks: RecordingHooks, feed_url: str, feed_bytes: bytes
    ) -> None:
        """Test a full invocation returns the transcoded document."""
        route = respx.get(feed_url).mock(return_value=Response(200, content=feed_bytes))

        async with httpx.AsyncClient() as client:
            response = await FeedPipeline(runtime, client, hooks).invoke()

        assert response.status_code == 200
        assert response.error_kind is None
        document = response.body["jsonData"]
        assert document["header"]["timestamp"] == "1700000005"
        assert len(document["entity"]) == 3
        assert document["entity"][0]["vehicle"]["timestamp"] == "1700000000"
        assert route.calls[0].request.headers["apiKey"] == runtime.credential

    @respx.mock
    async def test_hook_order(
        self, runtime: Runtime, hooks: RecordingHooks, feed_url: str, feed_bytes: bytes
    ) -> None:
        """Test stages are reported in order with their details."""
        respx.get(feed_url).mock(return_value=Response(200, content=feed_bytes))
        invocation = Invocation(request_id="req-1", cold_start=True)

        async with httpx.AsyncClient() as client:
            await FeedPipeline(runtime, client, hooks).invoke(invocation)

        assert hooks.events == [
            ("start", Stage.START, "req-1"),
            ("stage_start", Stage.FETCHING, None),
            ("stage_end", Stage.FETCHING, {"status_code": 200, "content_length": len(feed_bytes)}),
            ("stage_start", Stage.DECODING, None),
            (
                "stage_end",
                Stage.DECODING,
                {"message_type": "transit_realtime.FeedMessage", "entity_count": 3},
            ),
            ("stage_start", Stage.TRANSCODING, None),
            ("stage_end", Stage.TRANSCODING, {}),
            ("success", Stage.RESPONDING, None),
        ]
        assert invocation.stage is Stage.RESPONDING

    @respx.mock
    async def test_empty_feed(self, runtime: Runtime, hooks: RecordingHooks, feed_url: str) -> None:
        """Test a feed with no entities is a success with an empty array."""
        payload = b"\x0a\x05\x0a\x032.0"
        respx.get(feed_url).mock(return_value=Response(200, content=payload))

        async with httpx.AsyncClient() as client:
            response = await FeedPipeline(runtime, client, hooks).invoke()

        assert response.body == {
            "jsonData": {"header": {"gtfs_realtime_version": "2.0"}, "entity": []}
        }

    @respx.mock
    async def test_timeout(self, runtime: Runtime, hooks: RecordingHooks, feed_url: str) -> None:
        """Test an upstream timeout is a 500 reported at the fetching stage."""
        respx.get(feed_url).mock(side_effect=httpx.ReadTimeout("timed out"))

        async with httpx.AsyncClient() as client:
            response = await FeedPipeline(runtime, client, hooks).invoke()

        assert response.status_code == 500
        assert response.error_kind == "NetworkError"
        assert response.body == {
            "message": "Error fetching feed data: NetworkError during fetching"
        }
        assert hooks.names() == ["start", "stage_start", "failure"]
        assert hooks.events[-1] == ("failure", Stage.FETCHING, "NetworkError")
        assert isinstance(hooks.errors[0], NetworkError)

    @respx.mock
    async def test_auth_rejected(
        self, runtime: Runtime, hooks: RecordingHooks, feed_url: str
    ) -> None:
        """Test a 403 is reported as AuthError without leaking the credential."""
        respx.get(feed_url).mock(return_value=Response(403))

        async with httpx.AsyncClient() as client:
            response = await FeedPipeline(runtime, client, hooks).invoke()

        assert response.status_code == 500
        assert response.error_kind == "AuthError"
        assert runtime.credential not in json.dumps(response.body)

    @respx.mock
    async def test_upstream_error(
        self, runtime: Runtime, hooks: RecordingHooks, feed_url: str
    ) -> None:
        """Test a non-2xx upstream status."""
        respx.get(feed_url).mock(return_value=Response(502))

        async with httpx.AsyncClient() as client:
            response = await FeedPipeline(runtime, client, hooks).invoke()

        assert response.error_kind == "UpstreamError"

    @respx.mock
    async def test_truncated_payload(
        self, runtime: Runtime, hooks: RecordingHooks, feed_url: str, feed_bytes: bytes
    ) -> None:
        """Test a malformed payload fails at decoding with no partial document."""
        respx.get(feed_url).mock(return_value=Response(200, content=feed_bytes[:-3]))

        async with httpx.AsyncClient() as client:
            response = await FeedPipeline(runtime, client, hooks).invoke()

        assert response.status_code == 500
        assert response.error_kind == "DecodeError"
        assert "jsonData" not in response.body
        assert hooks.events[-1] == ("failure", Stage.DECODING, "DecodeError")
        error = hooks.errors[0]
        assert isinstance(error, DecodeError)
        assert 0 <= error.offset < len(feed_bytes)

    @respx.mock
    async def test_empty_body_fails_required_header(
        self, runtime: Runtime, hooks: RecordingHooks, feed_url: str
    ) -> None:
        """Test an empty 200 body is not a valid FeedMessage."""
        respx.get(feed_url).mock(return_value=Response(200, content=b""))

        async with httpx.AsyncClient() as client:
            response = await FeedPipeline(runtime, client, hooks).invoke()

        assert response.error_kind == "DecodeError"

    async def test_unexpected_exception(
        self, runtime: Runtime, hooks: RecordingHooks, feed_url: str
    ) -> None:
        """Test a non-domain exception becomes an InternalError 500."""

        class ExplodingClient(httpx.AsyncClient):
            async def get(self, *args: Any, **kwargs: Any) -> Response:  # type: ignore[override]
                raise RuntimeError("boom")

        async with ExplodingClient() as client:
            response = await FeedPipeline(runtime, client, hooks).invoke()

        assert response.status_code == 500
        assert response.error_kind == "InternalError"
        assert "boom" not in response.body["message"]

    async def test_cancelled_fetch_is_reported(
        self, runtime: Runtime, hooks: RecordingHooks
    ) -> None:
        """Test an aborted invocation reports a fetching NetworkError, then re-raises."""
        entered = asyncio.Event()

        class HangingClient(httpx.AsyncClient):
            async def get(self, *args: Any, **kwargs: Any) -> Response:  # type: ignore[override]
                entered.set()
                await asyncio.Event().wait()
                return Response(200)

        async with HangingClient() as client:
            task = asyncio.create_task(FeedPipeline(runtime, client, hooks).invoke())
            await entered.wait()
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        assert hooks.names() == ["start", "stage_start", "failure"]
        assert hooks.events[-1] == ("failure", Stage.FETCHING, "NetworkError")
        assert isinstance(hooks.errors[0], NetworkError)
        assert hooks.errors[0].reason == "cancelled"

    @respx.mock
    async def test_redirect_loop(
        self, runtime: Runtime, hooks: RecordingHooks, feed_url: str
    ) -> None:
        """Test a redirect loop is a NetworkError rather than an internal failure."""
        respx.get(feed_url).mock(return_value=Response(302, headers={"Location": feed_url}))

        async with create_http_client() as client:
            response = await FeedPipeline(runtime, client, hooks).invoke()

        assert response.status_code == 500
        assert response.error_kind == "NetworkError"

    @respx.mock
    async def test_custom_rules(
        self, runtime: Runtime, hooks: RecordingHooks, feed_url: str, feed_bytes: bytes
    ) -> None:
        """Test encoding rules are applied to the document."""
        respx.get(feed_url).mock(return_value=Response(200, content=feed_bytes))
        rules = EncodingRules(enums=EnumFormat.NUMBER)

        async with httpx.AsyncClient() as client:
            response = await FeedPipeline(runtime, client, hooks, rules=rules).invoke()

        assert response.body["jsonData"]["header"]["incrementality"] == 0

    @respx.mock
    async def test_invocations_are_independent(
        self, runtime: Runtime, hooks: RecordingHooks, feed_url: str, feed_bytes: bytes
    ) -> None:
        """Test a failed invocation does not affect the next one."""
        respx.get(feed_url).mock(
            side_effect=[httpx.ConnectError("refused"), Response(200, content=feed_bytes)]
        )

        async with httpx.AsyncClient() as client:
            pipeline = FeedPipeline(runtime, client, hooks)
            first = await pipeline.invoke()
            second = await pipeline.invoke()

        assert first.error_kind == "NetworkError"
        assert second.status_code == 200


class TestMetricsHooks:
    """Tests for metrics recorded through the pipeline."""

    @respx.mock
    async def test_success_metrics(
        self, runtime: Runtime, feed_url: str, feed_bytes: bytes
    ) -> None:
        """Test success, stage and cold-start metrics."""
        respx.get(feed_url).mock(return_value=Response(200, content=feed_bytes))
        labels = {"outcome": "success", "error_kind": ""}
        before = sample("gtfs_rt_transcode_invocations_total", labels)
        cold_before = sample("gtfs_rt_transcode_cold_starts_total")
        decode_before = sample(
            "gtfs_rt_transcode_stage_duration_seconds_count", {"stage": "decoding"}
        )

        async with httpx.AsyncClient() as client:
            pipeline = FeedPipeline(runtime, client, CompositeHooks(MetricsHooks()))
            await pipeline.invoke(Invocation(cold_start=True))

        assert sample("gtfs_rt_transcode_invocations_total", labels) == before + 1
        assert sample("gtfs_rt_transcode_cold_starts_total") == cold_before + 1
        assert (
            sample("gtfs_rt_transcode_stage_duration_seconds_count", {"stage": "decoding"})
            == decode_before + 1
        )
        assert sample("gtfs_rt_transcode_last_success_timestamp") > 0

    @respx.mock
    async def test_failure_metrics(self, runtime: Runtime, feed_url: str) -> None:
        """Test failures are counted by error kind."""
        respx.get(feed_url).mock(side_effect=httpx.ReadTimeout("timed out"))
        labels = {"outcome": "failure", "error_kind": "NetworkError"}
        before = sample("gtfs_rt_transcode_invocations_total", labels)

        async with httpx.AsyncClient() as client:
            await FeedPipeline(runtime, client, MetricsHooks()).invoke()

        assert sample("gtfs_rt_transcode_invocations_total", labels) == before + 1
