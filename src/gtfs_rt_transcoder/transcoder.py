"""Conversion of decoded Message trees to JSON-compatible values."""

import base64
import math
import re
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict

from gtfs_rt_transcoder.decoder import Message
from gtfs_rt_transcoder.schema import FLOAT_KINDS, LONG_KINDS, FieldDescriptor, SchemaRegistry


class EnumFormat(str, Enum):
    """How enum values are rendered."""

    NAME = "name"
    NUMBER = "number"


class LongFormat(str, Enum):
    """How 64-bit integer values are rendered."""

    STRING = "string"
    NUMBER = "number"


class BytesFormat(str, Enum):
    """How bytes values are rendered."""

    BASE64 = "base64"
    LIST = "list"


class KeyFormat(str, Enum):
    """How object keys are spelled.

    FIELD keeps the schema field names (``trip_id``). CAMEL converts them to
    lowerCamelCase (``tripId``), the spelling protobuf.js emits by default.
    """

    FIELD = "field"
    CAMEL = "camel"


_SNAKE_SEGMENT = re.compile(r"_([a-z])")


def camel_case(name: str) -> str:
    """Convert a snake_case field name to lowerCamelCase."""
    return _SNAKE_SEGMENT.sub(lambda m: m.group(1).upper(), name)


class EncodingRules(BaseModel):
    """Encoding rules applied by to_json()."""

    model_config = ConfigDict(frozen=True)

    enums: EnumFormat = EnumFormat.NAME
    longs: LongFormat = LongFormat.STRING
    bytes: BytesFormat = BytesFormat.BASE64
    keys: KeyFormat = KeyFormat.FIELD
    # Emit declared (or zero) defaults for absent singular scalar fields
    defaults: bool = False
    # Add a key per set oneof naming its populated member
    oneofs: bool = False


DEFAULT_RULES = EncodingRules()


class _Transcoder:
    def __init__(self, registry: SchemaRegistry, rules: EncodingRules) -> None:
        self.registry = registry
        self.rules = rules

    def message(self, message: Message) -> dict[str, Any]:
        descriptor = message.descriptor
        result: dict[str, Any] = {}
        present = {fd.number: value for fd, value in message.items()}
        for fd in descriptor.fields:
            key = self.key(fd.name)
            if fd.number in present:
                value = present[fd.number]
                if fd.is_repeated:
                    result[key] = [self.value(fd, item) for item in value]
                else:
                    result[key] = self.value(fd, value)
            elif fd.is_repeated:
                result[key] = []
            elif self.rules.defaults and fd.kind != "message" and fd.oneof is None:
                result[key] = self.value(fd, self.default(fd))
        if self.rules.oneofs:
            for group in descriptor.oneofs:
                member = message.which_oneof(group)
                if member is not None:
                    result[self.key(group)] = self.key(member)
        return result

    def key(self, name: str) -> str:
        return camel_case(name) if self.rules.keys is KeyFormat.CAMEL else name

    def default(self, fd: FieldDescriptor) -> Any:
        if fd.default is not None:
            return fd.default
        match fd.kind:
            case "enum":
                return self.registry.lookup_enum(fd.type_name or "").first_value
            case "string":
                return ""
            case "bytes":
                return b""
            case "bool":
                return False
            case kind if kind in FLOAT_KINDS:
                return 0.0
            case _:
                return 0

    def value(self, fd: FieldDescriptor, value: Any) -> Any:
        kind = fd.kind
        if kind == "message":
            return self.message(value)
        if kind == "enum":
            if self.rules.enums is EnumFormat.NUMBER:
                return value
            return self.registry.lookup_enum(fd.type_name or "").names.get(value, value)
        if kind in LONG_KINDS:
            return str(value) if self.rules.longs is LongFormat.STRING else value
        if kind == "bytes":
            if self.rules.bytes is BytesFormat.LIST:
                return list(value)
            return base64.b64encode(value).decode("ascii")
        if kind in FLOAT_KINDS and not math.isfinite(value):
            if math.isnan(value):
                return "NaN"
            return "Infinity" if value > 0 else "-Infinity"
        return value


def to_json(
    message: Message,
    registry: SchemaRegistry,
    rules: EncodingRules = DEFAULT_RULES,
) -> dict[str, Any]:
    """Convert a decoded message into a JSON-compatible dict.

    Nested messages become objects keyed by field name in schema declaration
    order. Keys keep the schema's snake_case spelling unless
    ``rules.keys`` asks for camelCase. Repeated fields are always present as arrays, absent optional
    fields are omitted (unless ``rules.defaults``). Enum values render as
    symbolic names, 64-bit integers as decimal strings and bytes as base64
    unless the rules say otherwise. Non-finite floats render as "NaN",
    "Infinity" or "-Infinity" so the result always serializes to valid JSON.

    Args:
        message: Decoded message tree.
        registry: Registry the message was decoded with (for enum names).
        rules: Scalar encoding rules.

    Returns:
        A dict containing only JSON-compatible values.
    """
    return _Transcoder(registry, rules).message(message)
