"""Stage-boundary hooks connecting the pipeline to logging, metrics and tracing.

The pipeline only knows the PipelineHooks interface. Telemetry backends
subclass it and override the callbacks they care about; CompositeHooks fans
each callback out to several backends.
"""

from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from opentelemetry import trace
from opentelemetry.trace import Span, Status, StatusCode, Tracer

from gtfs_rt_transcoder import metrics
from gtfs_rt_transcoder.errors import INTERNAL_ERROR_KIND, DecodeError, UpstreamError
from gtfs_rt_transcoder.logging import get_logger

if TYPE_CHECKING:
    from gtfs_rt_transcoder.pipeline import Invocation, Stage

SERVICE_NAME = "gtfs-rt-transcoder"
SPAN_NAME = "gtfs_rt_transcode"


class PipelineHooks:
    """No-op base for pipeline observers."""

    def on_start(self, invocation: "Invocation") -> None:
        """Called once when an invocation begins."""

    def on_stage_start(self, stage: "Stage", invocation: "Invocation") -> None:
        """Called when a stage begins."""

    def on_stage_end(
        self,
        stage: "Stage",
        invocation: "Invocation",
        duration_seconds: float,
        details: Mapping[str, Any],
    ) -> None:
        """Called when a stage completes successfully."""

    def on_failure(
        self,
        stage: "Stage",
        error_kind: str,
        error: BaseException,
        invocation: "Invocation",
    ) -> None:
        """Called once when a stage fails; the invocation then responds 500."""

    def on_success(self, invocation: "Invocation", duration_seconds: float) -> None:
        """Called once when an invocation produced a full document."""


class CompositeHooks(PipelineHooks):
    """Forwards every callback to each wrapped hook in order."""

    def __init__(self, *hooks: PipelineHooks) -> None:
        self.hooks = hooks

    def on_start(self, invocation: "Invocation") -> None:
        for hook in self.hooks:
            hook.on_start(invocation)

    def on_stage_start(self, stage: "Stage", invocation: "Invocation") -> None:
        for hook in self.hooks:
            hook.on_stage_start(stage, invocation)

    def on_stage_end(
        self,
        stage: "Stage",
        invocation: "Invocation",
        duration_seconds: float,
        details: Mapping[str, Any],
    ) -> None:
        for hook in self.hooks:
            hook.on_stage_end(stage, invocation, duration_seconds, details)

    def on_failure(
        self,
        stage: "Stage",
        error_kind: str,
        error: BaseException,
        invocation: "Invocation",
    ) -> None:
        for hook in self.hooks:
            hook.on_failure(stage, error_kind, error, invocation)

    def on_success(self, invocation: "Invocation", duration_seconds: float) -> None:
        for hook in self.hooks:
            hook.on_success(invocation, duration_seconds)


class LoggingHooks(PipelineHooks):
    """Writes one structured log entry per stage boundary."""

    def __init__(self) -> None:
        self.logger = get_logger("gtfs_rt_transcoder.pipeline")

    def on_start(self, invocation: "Invocation") -> None:
        self.logger.info("invocation_start")

    def on_stage_start(self, stage: "Stage", invocation: "Invocation") -> None:
        self.logger.debug("stage_start", stage=stage.value)

    def on_stage_end(
        self,
        stage: "Stage",
        invocation: "Invocation",
        duration_seconds: float,
        details: Mapping[str, Any],
    ) -> None:
        self.logger.info(
            f"{stage.value}_complete",
            duration_ms=round(duration_seconds * 1000, 3),
            **details,
        )

    def on_failure(
        self,
        stage: "Stage",
        error_kind: str,
        error: BaseException,
        invocation: "Invocation",
    ) -> None:
        context: dict[str, Any] = {
            "stage": stage.value,
            "error_kind": error_kind,
            "error_message": str(error),
        }
        if isinstance(error, DecodeError):
            context["offset"] = error.offset
            context["field_number"] = error.field_number
        elif isinstance(error, UpstreamError):
            context["status_code"] = error.status_code

        if error_kind == INTERNAL_ERROR_KIND:
            self.logger.error("invocation_failed", exc_info=error, **context)
        else:
            self.logger.warning("invocation_failed", **context)

    def on_success(self, invocation: "Invocation", duration_seconds: float) -> None:
        self.logger.info(
            "invocation_complete",
            duration_ms=round(duration_seconds * 1000, 3),
        )


class MetricsHooks(PipelineHooks):
    """Feeds stage timings and invocation outcomes into Prometheus."""

    def on_start(self, invocation: "Invocation") -> None:
        if invocation.cold_start:
            metrics.record_cold_start()

    def on_stage_end(
        self,
        stage: "Stage",
        invocation: "Invocation",
        duration_seconds: float,
        details: Mapping[str, Any],
    ) -> None:
        metrics.record_stage_duration(stage.value, duration_seconds)
        if "content_length" in details:
            metrics.record_fetch_bytes(details["content_length"])
        if "entity_count" in details:
            metrics.record_entity_count(details["entity_count"])

    def on_failure(
        self,
        stage: "Stage",
        error_kind: str,
        error: BaseException,
        invocation: "Invocation",
    ) -> None:
        metrics.record_failure(error_kind, invocation.elapsed_seconds())

    def on_success(self, invocation: "Invocation", duration_seconds: float) -> None:
        metrics.record_success(duration_seconds)


class TracingHooks(PipelineHooks):
    """Opens one OpenTelemetry span per invocation.

    The span carries the invocation id, cold-start flag and service name as
    attributes, one event per completed stage, and ends with an OK status on
    success or an ERROR status naming the error kind on failure. Without a
    configured tracer provider the OpenTelemetry API hands out no-op spans.
    """

    def __init__(self, tracer: Tracer | None = None, service_name: str = SERVICE_NAME) -> None:
        self.tracer = tracer or trace.get_tracer("gtfs_rt_transcoder")
        self.service_name = service_name
        # Keyed by id(); Invocation is unhashable and outlives its span
        self._spans: dict[int, Span] = {}

    def _open(self, invocation: "Invocation") -> Span:
        span = self.tracer.start_span(
            SPAN_NAME,
            attributes={
                "faas.invocation_id": invocation.request_id,
                "faas.coldstart": invocation.cold_start,
                "service.name": self.service_name,
            },
        )
        self._spans[id(invocation)] = span
        return span

    def _close(self, invocation: "Invocation") -> Span:
        if id(invocation) not in self._spans:
            # Failures before on_start (configuration) still get their span
            self._open(invocation)
        return self._spans.pop(id(invocation))

    def on_start(self, invocation: "Invocation") -> None:
        self._open(invocation)

    def on_stage_end(
        self,
        stage: "Stage",
        invocation: "Invocation",
        duration_seconds: float,
        details: Mapping[str, Any],
    ) -> None:
        span = self._spans.get(id(invocation))
        if span is None:
            return
        span.add_event(
            f"{stage.value}_complete",
            {"duration_ms": round(duration_seconds * 1000, 3), **details},
        )

    def on_failure(
        self,
        stage: "Stage",
        error_kind: str,
        error: BaseException,
        invocation: "Invocation",
    ) -> None:
        span = self._close(invocation)
        span.set_attribute("error.type", error_kind)
        span.set_attribute("pipeline.stage", stage.value)
        span.record_exception(error)
        span.set_status(Status(StatusCode.ERROR, error_kind))
        span.end()

    def on_success(self, invocation: "Invocation", duration_seconds: float) -> None:
        span = self._close(invocation)
        span.set_status(Status(StatusCode.OK))
        span.end()


def default_hooks() -> PipelineHooks:
    """Logging, Prometheus metrics and OpenTelemetry tracing."""
    return CompositeHooks(LoggingHooks(), MetricsHooks(), TracingHooks())
