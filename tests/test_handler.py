"""Tests for the AWS Lambda entry point."""

import json
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import patch

import httpx
import pytest
import respx
from httpx import Response

from gtfs_rt_transcoder.handler import handle_event, lambda_handler, request_id_from
from gtfs_rt_transcoder.hooks import PipelineHooks
from gtfs_rt_transcoder.runtime import is_initialized

FEED_URL = "https://api.example.com/gtfs-rt/tripUpdates"

pytestmark = pytest.mark.usefixtures("clean_runtime")


@pytest.fixture
def lambda_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Environment of a configured function."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("API_URL", FEED_URL)
    monkeypatch.setenv("API_KEY", "lambda-key")


@pytest.fixture
def empty_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Environment of a function deployed without configuration."""
    monkeypatch.chdir(tmp_path)
    for name in ("API_URL", "API_KEY", "API_KEY_SECRET"):
        monkeypatch.delenv(name, raising=False)


class TestRequestIdFrom:
    """Tests for request_id_from function."""

    def test_prefers_lambda_context(self) -> None:
        """Test the Lambda request id wins."""
        context = SimpleNamespace(aws_request_id="lambda-1")
        event = {"requestContext": {"requestId": "apigw-1"}}

        assert request_id_from(event, context) == "lambda-1"

    def test_falls_back_to_api_gateway(self) -> None:
        """Test the API Gateway request id is used without a context."""
        event = {"requestContext": {"requestId": "apigw-1"}}
        assert request_id_from(event, None) == "apigw-1"

    def test_generates_uuid(self) -> None:
        """Test a fresh id when neither source has one."""
        first = request_id_from(None, None)
        second = request_id_from({}, object())

        assert len(first) == 36
        assert first != second


class TestHandleEvent:
    """Tests for handle_event function."""

    @respx.mock
    async def test_success(self, lambda_env: None, feed_bytes: bytes) -> None:
        """Test a configured function returns the transcoded feed."""
        route = respx.get(FEED_URL).mock(return_value=Response(200, content=feed_bytes))

        context = SimpleNamespace(aws_request_id="req-1")

        result = await handle_event({}, context, hooks=PipelineHooks())

        assert result["statusCode"] == 200
        assert result["headers"]["Content-Type"] == "application/json"
        body = json.loads(result["body"])
        assert [e["id"] for e in body["jsonData"]["entity"]] == ["1", "2", "alert-1"]
        assert route.calls[0].request.headers["apiKey"] == "lambda-key"

    @respx.mock
    async def test_reuses_given_client(self, lambda_env: None, feed_bytes: bytes) -> None:
        """Test a caller-supplied client is used and left open."""
        respx.get(FEED_URL).mock(return_value=Response(200, content=feed_bytes))

        async with httpx.AsyncClient() as client:
            result = await handle_event({}, None, client=client, hooks=PipelineHooks())
            assert not client.is_closed

        assert result["statusCode"] == 200

    async def test_missing_configuration(self, empty_env: None) -> None:
        """Test an unconfigured function answers 500 instead of crashing."""
        result = await handle_event({}, None, hooks=PipelineHooks())

        assert result["statusCode"] == 500
        assert json.loads(result["body"]) == {
            "message": "Error fetching feed data: ConfigError during start"
        }
        assert is_initialized() is False

    @respx.mock
    async def test_retries_initialization(
        self, empty_env: None, monkeypatch: pytest.MonkeyPatch, feed_bytes: bytes
    ) -> None:
        """Test a later invocation initializes once configuration appears."""
        respx.get(FEED_URL).mock(return_value=Response(200, content=feed_bytes))

        failed = await handle_event({}, None, hooks=PipelineHooks())
        monkeypatch.setenv("API_URL", FEED_URL)
        monkeypatch.setenv("API_KEY", "lambda-key")
        succeeded = await handle_event({}, None, hooks=PipelineHooks())

        assert failed["statusCode"] == 500
        assert succeeded["statusCode"] == 200

    @respx.mock
    async def test_upstream_failure(self, lambda_env: None) -> None:
        """Test upstream errors map to a 500 with the error kind."""
        respx.get(FEED_URL).mock(return_value=Response(401))

        result = await handle_event({}, None, hooks=PipelineHooks())

        assert result["statusCode"] == 500
        assert "AuthError" in json.loads(result["body"])["message"]

    @respx.mock
    async def test_cold_start_flag(self, lambda_env: None, feed_bytes: bytes) -> None:
        """Test only the first invocation after initialization is cold."""
        respx.get(FEED_URL).mock(return_value=Response(200, content=feed_bytes))
        seen: list[bool] = []

        class ColdStartHooks(PipelineHooks):
            def on_start(self, invocation):  # type: ignore[no-untyped-def]
                seen.append(invocation.cold_start)

        for _ in range(3):
            await handle_event({}, None, hooks=ColdStartHooks())

        assert seen == [True, False, False]


class TestLambdaHandler:
    """Tests for the synchronous Lambda entry point."""

    @respx.mock
    def test_runs_event_loop(self, lambda_env: None, feed_bytes: bytes) -> None:
        """Test lambda_handler drives one invocation to completion."""
        respx.get(FEED_URL).mock(return_value=Response(200, content=feed_bytes))

        with patch("gtfs_rt_transcoder.handler._setup_logging"):
            first = lambda_handler({}, SimpleNamespace(aws_request_id="req-1"))
            second = lambda_handler({}, SimpleNamespace(aws_request_id="req-2"))

        assert first["statusCode"] == 200
        assert second["statusCode"] == 200
