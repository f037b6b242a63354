"""Credential resolution: direct value or GCP Secret Manager."""

import asyncio

from google.api_core import exceptions as gcp_exceptions
from google.cloud import secretmanager_v1
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from gtfs_rt_transcoder.config import Settings
from gtfs_rt_transcoder.errors import ConfigError
from gtfs_rt_transcoder.logging import get_logger

logger = get_logger(__name__)

# Module-level cache for resolved secrets
_secret_cache: dict[str, str] = {}
_cache_lock = asyncio.Lock()

# Secret Manager failures worth another attempt during startup
TRANSIENT_EXCEPTIONS = (
    gcp_exceptions.ServiceUnavailable,
    gcp_exceptions.DeadlineExceeded,
    gcp_exceptions.InternalServerError,
    ConnectionError,
    TimeoutError,
)


class SecretManagerError(ConfigError):
    """Error fetching secret from Secret Manager."""

    def __init__(self, secret_name: str, message: str) -> None:
        self.secret_name = secret_name
        super().__init__(f"Failed to fetch secret '{secret_name}': {message}")


async def _access_secret(name: str) -> str:
    client = secretmanager_v1.SecretManagerServiceAsyncClient()
    response = await client.access_secret_version(
        request=secretmanager_v1.AccessSecretVersionRequest(name=name)
    )
    secret_value: str = response.payload.data.decode("utf-8")
    return secret_value


async def get_secret(project_id: str, secret_name: str, max_attempts: int = 3) -> str:
    """Fetch a secret value from GCP Secret Manager.

    Transient failures are retried with exponential backoff; this only runs
    during initialization, never on the request path.

    Args:
        project_id: GCP project ID.
        secret_name: Name of the secret in Secret Manager.
        max_attempts: Attempts before giving up.

    Returns:
        The secret value as a string.

    Raises:
        SecretManagerError: If the secret cannot be fetched.
    """
    cache_key = f"{project_id}/{secret_name}"

    async with _cache_lock:
        if cache_key in _secret_cache:
            return _secret_cache[cache_key]

    name = f"projects/{project_id}/secrets/{secret_name}/versions/latest"
    try:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(max_attempts),
            wait=wait_exponential(multiplier=0.5, max=5.0),
            retry=retry_if_exception_type(TRANSIENT_EXCEPTIONS),
            reraise=True,
        ):
            with attempt:
                secret_value = await _access_secret(name)
    except Exception as e:
        raise SecretManagerError(secret_name, str(e)) from e

    async with _cache_lock:
        _secret_cache[cache_key] = secret_value

    return secret_value


async def resolve_credential(settings: Settings) -> str:
    """Return the upstream credential from settings or Secret Manager.

    Args:
        settings: Loaded service settings.

    Returns:
        The credential value.

    Raises:
        ConfigError: If no credential source is usable.
    """
    if settings.credential is not None:
        return settings.credential
    if settings.credential_secret is None or not settings.gcp_project_id:
        raise ConfigError("No credential configured")

    logger.info("resolving_credential_secret", secret_name=settings.credential_secret)
    return await get_secret(settings.gcp_project_id, settings.credential_secret)


def clear_cache() -> None:
    """Clear the secret cache. Useful for testing."""
    _secret_cache.clear()
