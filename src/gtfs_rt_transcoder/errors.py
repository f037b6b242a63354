"""Error taxonomy for the GTFS-RT Transcoder.

Every error carries a stable ``kind`` tag (the class name) that is reported to
logs, metrics and hooks. Fatal errors prevent the service from answering any
request until the configuration or schema is corrected.
"""

# Error kind reported for exceptions outside this taxonomy
INTERNAL_ERROR_KIND = "InternalError"


class TranscoderError(Exception):
    """Base class for all transcoder errors."""

    fatal: bool = False

    @property
    def kind(self) -> str:
        """Stable error-kind tag."""
        return type(self).__name__


class ConfigError(TranscoderError):
    """Missing or invalid configuration (endpoint, credential, schema path)."""

    fatal = True


class NotInitializedError(ConfigError):
    """The runtime was used before initialize() completed."""

    def __init__(self) -> None:
        super().__init__("Runtime has not been initialized")


class SchemaError(TranscoderError):
    """The schema source is missing, malformed or unusable."""

    fatal = True

    def __init__(self, message: str, source: str | None = None, line: int | None = None) -> None:
        self.source = source
        self.line = line
        location = ""
        if source is not None:
            location = f"{source}:{line}: " if line is not None else f"{source}: "
        super().__init__(f"{location}{message}")


class UnknownTypeError(SchemaError):
    """A type name was looked up that the registry does not define."""

    def __init__(self, type_name: str) -> None:
        self.type_name = type_name
        super().__init__(f"Unknown type '{type_name}'")


class NetworkError(TranscoderError):
    """The feed could not be fetched: timeout, connection failure or abort."""

    def __init__(self, reason: str, message: str = "") -> None:
        self.reason = reason
        super().__init__(f"{reason}: {message}" if message else reason)


class UpstreamError(TranscoderError):
    """The upstream API answered with a non-2xx status."""

    def __init__(self, status_code: int, message: str = "") -> None:
        self.status_code = status_code
        super().__init__(f"HTTP {status_code}: {message}" if message else f"HTTP {status_code}")


class AuthError(UpstreamError):
    """The upstream API rejected the credential (401/403)."""


class DecodeError(TranscoderError):
    """The binary payload is malformed for the expected message type."""

    def __init__(self, message: str, offset: int, field_number: int | None = None) -> None:
        self.offset = offset
        self.field_number = field_number
        detail = f"{message} at offset {offset}"
        if field_number is not None:
            detail += f" (field {field_number})"
        super().__init__(detail)
