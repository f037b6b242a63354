"""Write-once process state: settings, schema registry and credential.

initialize() builds the Runtime once and is safe to call repeatedly; the
first completed initialization wins. get_runtime() raises
NotInitializedError until then, so callers can reject requests instead of
touching half-built state.
"""

import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime

from gtfs_rt_transcoder.config import Settings, load_settings
from gtfs_rt_transcoder.decoder import MessageDecoder
from gtfs_rt_transcoder.errors import NotInitializedError
from gtfs_rt_transcoder.logging import get_logger
from gtfs_rt_transcoder.schema import MessageDescriptor, SchemaRegistry, load_schema
from gtfs_rt_transcoder.secrets import resolve_credential

logger = get_logger(__name__)


@dataclass(frozen=True)
class Runtime:
    """Immutable state shared by every invocation."""

    settings: Settings
    registry: SchemaRegistry
    root_type: MessageDescriptor
    decoder: MessageDecoder
    credential: str = field(repr=False)
    initialized_at: datetime = field(default_factory=lambda: datetime.now(UTC))


class _RuntimeSlot:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._runtime: Runtime | None = None
        self._cold = True

    @property
    def is_set(self) -> bool:
        return self._runtime is not None

    def get(self) -> Runtime:
        runtime = self._runtime
        if runtime is None:
            raise NotInitializedError()
        return runtime

    def set(self, runtime: Runtime) -> Runtime:
        with self._lock:
            if self._runtime is None:
                self._runtime = runtime
                self._cold = True
            return self._runtime

    def claim_cold_start(self) -> bool:
        with self._lock:
            cold, self._cold = self._cold, False
            return cold

    def clear(self) -> None:
        with self._lock:
            self._runtime = None
            self._cold = True


_slot = _RuntimeSlot()


def build_runtime(settings: Settings, credential: str) -> Runtime:
    """Load the schema and assemble a Runtime without publishing it.

    Raises:
        SchemaError: If the schema cannot be loaded or lacks the root type.
    """
    registry = load_schema(settings.schema_path)
    root_type = registry.lookup_type(settings.root_type)
    return Runtime(
        settings=settings,
        registry=registry,
        root_type=root_type,
        decoder=MessageDecoder(registry, strict_oneof=settings.strict_oneof),
        credential=credential,
    )


async def initialize(settings: Settings | None = None) -> Runtime:
    """Initialize process state once; later calls return the same Runtime.

    Args:
        settings: Settings to use; loaded from the environment when omitted.

    Returns:
        The published Runtime.

    Raises:
        ConfigError: If configuration or credential resolution fails.
        SchemaError: If the schema cannot be loaded.
    """
    if _slot.is_set:
        return _slot.get()

    settings = settings or load_settings()
    credential = await resolve_credential(settings)
    runtime = _slot.set(build_runtime(settings, credential))

    logger.info(
        "runtime_initialized",
        schema=runtime.registry.source,
        root_type=runtime.root_type.full_name,
        message_types=len(runtime.registry.message_names),
        endpoint=str(settings.endpoint_url),
    )
    return runtime


def get_runtime() -> Runtime:
    """Return the initialized Runtime.

    Raises:
        NotInitializedError: If initialize() has not completed.
    """
    return _slot.get()


def is_initialized() -> bool:
    return _slot.is_set


def claim_cold_start() -> bool:
    """True for exactly one invocation after each initialization."""
    return _slot.claim_cold_start()


def reset_runtime() -> None:
    """Forget the published Runtime. Useful for testing."""
    _slot.clear()
