"""Schema-driven decoder for the protobuf binary wire format.

Dispatch is table based: each message type maps field numbers to
FieldDescriptors, and each scalar kind maps to a reader function. Field
numbers the schema does not know are skipped by their wire-type length rules,
so feeds that add fields upstream still decode.
"""

import struct
from collections.abc import Callable, Iterator
from typing import Any

from gtfs_rt_transcoder.errors import DecodeError
from gtfs_rt_transcoder.logging import get_logger
from gtfs_rt_transcoder.schema import (
    FieldDescriptor,
    MessageDescriptor,
    SchemaRegistry,
    WireType,
)

logger = get_logger(__name__)

DEFAULT_MAX_DEPTH = 100

_MASK32 = (1 << 32) - 1
_MASK64 = (1 << 64) - 1
_MAX_VARINT_BYTES = 10


class Message:
    """A decoded message: present field values keyed by field number."""

    __slots__ = ("descriptor", "_values", "_oneof_cases")

    def __init__(self, descriptor: MessageDescriptor) -> None:
        self.descriptor = descriptor
        self._values: dict[int, Any] = {}
        self._oneof_cases: dict[str, int] = {}

    def __repr__(self) -> str:
        fields = ", ".join(f"{fd.name}={value!r}" for fd, value in self.items())
        return f"{self.descriptor.name}({fields})"

    def _field(self, name: str) -> FieldDescriptor:
        fd = self.descriptor.field_by_name(name)
        if fd is None:
            raise KeyError(f"{self.descriptor.full_name} has no field '{name}'")
        return fd

    def has(self, name: str) -> bool:
        """Whether a field was present on the wire (repeated: non-empty)."""
        return self._field(name).number in self._values

    def get(self, name: str, default: Any = None) -> Any:
        fd = self._field(name)
        if fd.number in self._values:
            return self._values[fd.number]
        return [] if fd.is_repeated else default

    def __getitem__(self, name: str) -> Any:
        fd = self._field(name)
        if fd.is_repeated:
            return self._values.get(fd.number, [])
        return self._values[fd.number]

    def which_oneof(self, group: str) -> str | None:
        """Name of the populated member of a oneof group, if any."""
        number = self._oneof_cases.get(group)
        if number is None:
            return None
        fd = self.descriptor.field_by_number(number)
        return fd.name if fd is not None else None

    def items(self) -> Iterator[tuple[FieldDescriptor, Any]]:
        """Present fields in schema declaration order."""
        for fd in self.descriptor.fields:
            if fd.number in self._values:
                yield fd, self._values[fd.number]

    def set_value(self, fd: FieldDescriptor, value: Any) -> int | None:
        """Store a decoded value, returning the number of a displaced oneof member."""
        displaced = None
        if fd.oneof is not None:
            current = self._oneof_cases.get(fd.oneof)
            if current is not None and current != fd.number:
                del self._values[current]
                displaced = current
            self._oneof_cases[fd.oneof] = fd.number
        if fd.is_repeated:
            self._values.setdefault(fd.number, []).append(value)
        else:
            self._values[fd.number] = value
        return displaced


class _Reader:
    """Cursor over the payload; offsets are absolute within the payload."""

    __slots__ = ("data", "pos")

    def __init__(self, data: bytes) -> None:
        self.data = data
        self.pos = 0

    def varint(self, end: int, field_number: int | None) -> int:
        start = self.pos
        data = self.data
        result = 0
        shift = 0
        for _ in range(_MAX_VARINT_BYTES):
            if self.pos >= end:
                raise DecodeError("Truncated varint", start, field_number)
            byte = data[self.pos]
            self.pos += 1
            result |= (byte & 0x7F) << shift
            if not byte & 0x80:
                return result & _MASK64
            shift += 7
        raise DecodeError("Invalid varint longer than 10 bytes", start, field_number)

    def take(self, size: int, end: int, field_number: int | None) -> bytes:
        start = self.pos
        if size > end - start:
            raise DecodeError(
                f"Truncated value: need {size} bytes, {end - start} available",
                start,
                field_number,
            )
        self.pos += size
        return self.data[start : self.pos]

    def length(self, end: int, field_number: int | None) -> int:
        start = self.pos
        size = self.varint(end, field_number)
        if size > end - self.pos:
            raise DecodeError(
                f"Length prefix {size} exceeds remaining {end - self.pos} bytes",
                start,
                field_number,
            )
        return size


def _signed(value: int, bits: int) -> int:
    value &= (1 << bits) - 1
    return value - (1 << bits) if value >> (bits - 1) else value


def _zigzag(value: int) -> int:
    return (value >> 1) ^ -(value & 1)


def _fixed(fmt: str) -> Callable[[_Reader, int, int], Any]:
    packer = struct.Struct(fmt)

    def read(reader: _Reader, end: int, field_number: int) -> Any:
        return packer.unpack(reader.take(packer.size, end, field_number))[0]

    return read


def _read_string(reader: _Reader, end: int, field_number: int) -> str:
    start = reader.pos
    raw = reader.take(reader.length(end, field_number), end, field_number)
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        raise DecodeError("Invalid UTF-8 in string field", start, field_number) from None


def _read_bytes(reader: _Reader, end: int, field_number: int) -> bytes:
    return bytes(reader.take(reader.length(end, field_number), end, field_number))


_SCALAR_READERS: dict[str, Callable[[_Reader, int, int], Any]] = {
    "int32": lambda r, end, n: _signed(r.varint(end, n), 32),
    "int64": lambda r, end, n: _signed(r.varint(end, n), 64),
    "uint32": lambda r, end, n: r.varint(end, n) & _MASK32,
    "uint64": lambda r, end, n: r.varint(end, n),
    "sint32": lambda r, end, n: _zigzag(r.varint(end, n) & _MASK32),
    "sint64": lambda r, end, n: _zigzag(r.varint(end, n)),
    "bool": lambda r, end, n: r.varint(end, n) != 0,
    "enum": lambda r, end, n: _signed(r.varint(end, n), 32),
    "fixed32": _fixed("<I"),
    "sfixed32": _fixed("<i"),
    "float": _fixed("<f"),
    "fixed64": _fixed("<Q"),
    "sfixed64": _fixed("<q"),
    "double": _fixed("<d"),
    "string": _read_string,
    "bytes": _read_bytes,
}


class MessageDecoder:
    """Decodes binary payloads into Message trees using a SchemaRegistry.

    Singular fields that appear more than once keep the last value, nested
    messages included (no merging). When a second member of a oneof group
    arrives, the earlier member is dropped and a ``oneof_overwritten``
    warning is logged; with ``strict_oneof`` the conflict is a DecodeError.
    Enum values the schema does not declare are dropped like unknown fields.
    """

    def __init__(
        self,
        registry: SchemaRegistry,
        *,
        strict_oneof: bool = False,
        max_depth: int = DEFAULT_MAX_DEPTH,
    ) -> None:
        self.registry = registry
        self.strict_oneof = strict_oneof
        self.max_depth = max_depth

    def decode(self, data: bytes, descriptor: MessageDescriptor | str) -> Message:
        """Decode a complete payload as the given message type.

        Args:
            data: Raw payload bytes.
            descriptor: Root message descriptor or its type name.

        Returns:
            The decoded Message tree.

        Raises:
            DecodeError: If the payload is malformed for the type.
            UnknownTypeError: If the type name is not in the registry.
        """
        if isinstance(descriptor, str):
            descriptor = self.registry.lookup_type(descriptor)
        reader = _Reader(bytes(data))
        return self._decode_message(reader, descriptor, len(reader.data), depth=0)

    def _decode_message(
        self,
        reader: _Reader,
        descriptor: MessageDescriptor,
        end: int,
        depth: int,
    ) -> Message:
        if depth > self.max_depth:
            raise DecodeError(f"Message nesting exceeds {self.max_depth} levels", reader.pos)

        message = Message(descriptor)
        while reader.pos < end:
            tag_offset = reader.pos
            tag = reader.varint(end, None)
            number = tag >> 3
            wire_type = tag & 0x07
            if number == 0:
                raise DecodeError("Invalid field number 0", tag_offset, 0)
            if wire_type > WireType.FIXED32:
                raise DecodeError(f"Invalid wire type {wire_type}", tag_offset, number)

            fd = descriptor.field_by_number(number)
            if fd is None:
                self._skip(reader, wire_type, number, end, tag_offset)
                continue
            self._read_field(reader, message, fd, wire_type, end, depth, tag_offset)

        for fd in descriptor.required:
            if not message.has(fd.name):
                raise DecodeError(
                    f"Missing required field '{descriptor.full_name}.{fd.name}'",
                    end,
                    fd.number,
                )
        return message

    def _read_field(
        self,
        reader: _Reader,
        message: Message,
        fd: FieldDescriptor,
        wire_type: int,
        end: int,
        depth: int,
        tag_offset: int,
    ) -> None:
        if fd.is_packable and wire_type == WireType.LENGTH_DELIMITED:
            size = reader.length(end, fd.number)
            packed_end = reader.pos + size
            read = _SCALAR_READERS[fd.kind]
            while reader.pos < packed_end:
                self._store(message, fd, read(reader, packed_end, fd.number), tag_offset)
            return

        if wire_type != fd.wire_type:
            raise DecodeError(
                f"Wire type {wire_type} does not match {fd.kind} field "
                f"'{message.descriptor.full_name}.{fd.name}'",
                tag_offset,
                fd.number,
            )

        if fd.kind == "message":
            size = reader.length(end, fd.number)
            nested = self.registry.lookup_type(fd.type_name or "")
            value = self._decode_message(reader, nested, reader.pos + size, depth + 1)
        else:
            value = _SCALAR_READERS[fd.kind](reader, end, fd.number)
        self._store(message, fd, value, tag_offset)

    def _store(self, message: Message, fd: FieldDescriptor, value: Any, offset: int) -> None:
        if fd.kind == "enum":
            enum = self.registry.lookup_enum(fd.type_name or "")
            if value not in enum.names:
                logger.debug(
                    "unknown_enum_value",
                    enum_type=enum.full_name,
                    field=fd.name,
                    value=value,
                    offset=offset,
                )
                return

        if fd.oneof is not None and self.strict_oneof:
            current = message.which_oneof(fd.oneof)
            if current is not None and current != fd.name:
                raise DecodeError(
                    f"Oneof '{fd.oneof}' already holds '{current}', got '{fd.name}'",
                    offset,
                    fd.number,
                )

        displaced = message.set_value(fd, value)
        if displaced is not None:
            dropped = message.descriptor.field_by_number(displaced)
            logger.warning(
                "oneof_overwritten",
                message_type=message.descriptor.full_name,
                oneof=fd.oneof,
                dropped=dropped.name if dropped else displaced,
                kept=fd.name,
                offset=offset,
            )

    def _skip(
        self,
        reader: _Reader,
        wire_type: int,
        number: int,
        end: int,
        tag_offset: int,
    ) -> None:
        match wire_type:
            case WireType.VARINT:
                reader.varint(end, number)
            case WireType.FIXED64:
                reader.take(8, end, number)
            case WireType.LENGTH_DELIMITED:
                reader.take(reader.length(end, number), end, number)
            case WireType.FIXED32:
                reader.take(4, end, number)
            case WireType.START_GROUP:
                while True:
                    if reader.pos >= end:
                        raise DecodeError("Unterminated group", tag_offset, number)
                    inner_offset = reader.pos
                    tag = reader.varint(end, number)
                    inner_number = tag >> 3
                    inner_wire = tag & 0x07
                    if inner_wire == WireType.END_GROUP:
                        if inner_number != number:
                            raise DecodeError("Mismatched end-group", inner_offset, inner_number)
                        return
                    if inner_wire > WireType.FIXED32 or inner_number == 0:
                        raise DecodeError(
                            f"Invalid wire type {inner_wire}", inner_offset, inner_number
                        )
                    self._skip(reader, inner_wire, inner_number, end, inner_offset)
            case _:
                raise DecodeError("Unexpected end-group", tag_offset, number)
        logger.debug("unknown_field_skipped", field_number=number, wire_type=wire_type)
