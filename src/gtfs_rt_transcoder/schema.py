"""Schema registry: parses a ``.proto`` schema into immutable descriptors.

The registry is built once per process and only read afterwards. Every
descriptor is a frozen dataclass and every index is a read-only mapping, so a
loaded registry can be shared by any number of concurrent decodes without
locking.
"""

import codecs
import re
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from importlib import resources
from pathlib import Path
from types import MappingProxyType
from typing import Any, NamedTuple

from gtfs_rt_transcoder.errors import SchemaError, UnknownTypeError

BUNDLED_SCHEMA = "gtfs-realtime.proto"

# Field numbers reserved by the protobuf implementation itself
RESERVED_FIELD_NUMBERS = range(19000, 20000)
MAX_FIELD_NUMBER = (1 << 29) - 1


class WireType(IntEnum):
    """Binary encoding category of a field on the wire."""

    VARINT = 0
    FIXED64 = 1
    LENGTH_DELIMITED = 2
    START_GROUP = 3
    END_GROUP = 4
    FIXED32 = 5


class Label(str, Enum):
    """Field cardinality."""

    OPTIONAL = "optional"
    REQUIRED = "required"
    REPEATED = "repeated"


SCALAR_WIRE_TYPES: Mapping[str, WireType] = MappingProxyType({
    "int32": WireType.VARINT,
    "int64": WireType.VARINT,
    "uint32": WireType.VARINT,
    "uint64": WireType.VARINT,
    "sint32": WireType.VARINT,
    "sint64": WireType.VARINT,
    "bool": WireType.VARINT,
    "fixed64": WireType.FIXED64,
    "sfixed64": WireType.FIXED64,
    "double": WireType.FIXED64,
    "string": WireType.LENGTH_DELIMITED,
    "bytes": WireType.LENGTH_DELIMITED,
    "fixed32": WireType.FIXED32,
    "sfixed32": WireType.FIXED32,
    "float": WireType.FIXED32,
})

KIND_WIRE_TYPES: Mapping[str, WireType] = MappingProxyType({
    **SCALAR_WIRE_TYPES,
    "enum": WireType.VARINT,
    "message": WireType.LENGTH_DELIMITED,
})

# Kinds that may be encoded as a packed run inside one length-delimited field
PACKABLE_KINDS = frozenset(
    kind for kind, wire_type in KIND_WIRE_TYPES.items() if wire_type != WireType.LENGTH_DELIMITED
)

LONG_KINDS = frozenset({"int64", "uint64", "sint64", "fixed64", "sfixed64"})
FLOAT_KINDS = frozenset({"float", "double"})


@dataclass(frozen=True)
class FieldDescriptor:
    """A single field of a message type."""

    name: str
    number: int
    kind: str
    label: Label = Label.OPTIONAL
    type_name: str | None = None
    oneof: str | None = None
    default: Any = None
    packed: bool = False

    @property
    def wire_type(self) -> WireType:
        """Wire type the field is encoded with when not packed."""
        return KIND_WIRE_TYPES[self.kind]

    @property
    def is_repeated(self) -> bool:
        return self.label is Label.REPEATED

    @property
    def is_packable(self) -> bool:
        return self.is_repeated and self.kind in PACKABLE_KINDS


@dataclass(frozen=True)
class EnumDescriptor:
    """An enum type: symbolic names and their numeric codes."""

    full_name: str
    values: Mapping[str, int]
    names: Mapping[int, str] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        names: dict[int, str] = {}
        for name, number in self.values.items():
            # First declared name wins for aliased numbers
            names.setdefault(number, name)
        object.__setattr__(self, "values", MappingProxyType(dict(self.values)))
        object.__setattr__(self, "names", MappingProxyType(names))

    @property
    def first_value(self) -> int:
        return next(iter(self.values.values()))


@dataclass(frozen=True)
class MessageDescriptor:
    """A message type with its field lookup tables."""

    full_name: str
    fields: tuple[FieldDescriptor, ...]
    _by_number: Mapping[int, FieldDescriptor] = field(init=False, repr=False, compare=False)
    oneofs: Mapping[str, tuple[FieldDescriptor, ...]] = field(
        init=False, repr=False, compare=False
    )
    required: tuple[FieldDescriptor, ...] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        oneofs: dict[str, list[FieldDescriptor]] = {}
        for fd in self.fields:
            if fd.oneof is not None:
                oneofs.setdefault(fd.oneof, []).append(fd)
        object.__setattr__(
            self, "_by_number", MappingProxyType({fd.number: fd for fd in self.fields})
        )
        object.__setattr__(
            self, "oneofs", MappingProxyType({k: tuple(v) for k, v in oneofs.items()})
        )
        object.__setattr__(
            self, "required", tuple(fd for fd in self.fields if fd.label is Label.REQUIRED)
        )

    @property
    def name(self) -> str:
        return self.full_name.rpartition(".")[2]

    def field_by_number(self, number: int) -> FieldDescriptor | None:
        return self._by_number.get(number)

    def field_by_name(self, name: str) -> FieldDescriptor | None:
        for fd in self.fields:
            if fd.name == name:
                return fd
        return None


def _short_names(full_name: str) -> Iterator[str]:
    """Yield every dotted suffix of a full name, shortest first."""
    parts = full_name.split(".")
    for i in range(len(parts) - 1, 0, -1):
        yield ".".join(parts[i:])


class SchemaRegistry:
    """Read-only index of message and enum types."""

    def __init__(
        self,
        messages: Mapping[str, MessageDescriptor],
        enums: Mapping[str, EnumDescriptor],
        source: str = "<string>",
    ) -> None:
        self.source = source
        self._messages = MappingProxyType(dict(messages))
        self._enums = MappingProxyType(dict(enums))
        self._aliases = MappingProxyType(
            self._build_aliases(list(self._messages) + list(self._enums))
        )

    @staticmethod
    def _build_aliases(full_names: list[str]) -> dict[str, tuple[str, ...]]:
        aliases: dict[str, list[str]] = {}
        for full_name in full_names:
            for short in _short_names(full_name):
                aliases.setdefault(short, []).append(full_name)
        return {k: tuple(v) for k, v in aliases.items()}

    @property
    def message_names(self) -> tuple[str, ...]:
        return tuple(self._messages)

    @property
    def enum_names(self) -> tuple[str, ...]:
        return tuple(self._enums)

    def _resolve(self, name: str, table: Mapping[str, Any]) -> Any:
        name = name.lstrip(".")
        if name in table:
            return table[name]
        candidates = [c for c in self._aliases.get(name, ()) if c in table]
        if len(candidates) == 1:
            return table[candidates[0]]
        raise UnknownTypeError(name)

    def lookup_type(self, name: str) -> MessageDescriptor:
        """Look up a message type by full or unambiguous short name.

        Raises:
            UnknownTypeError: If no single message type matches.
        """
        descriptor: MessageDescriptor = self._resolve(name, self._messages)
        return descriptor

    def lookup_enum(self, name: str) -> EnumDescriptor:
        """Look up an enum type by full or unambiguous short name.

        Raises:
            UnknownTypeError: If no single enum type matches.
        """
        descriptor: EnumDescriptor = self._resolve(name, self._enums)
        return descriptor


# --- .proto parsing ---------------------------------------------------------


class _Token(NamedTuple):
    kind: str
    value: str
    line: int


_TOKEN_RE = re.compile(
    r"""
      (?P<ws>\s+)
    | (?P<comment>//[^\n]*|/\*.*?\*/)
    | (?P<string>"(?:[^"\\\n]|\\.)*"|'(?:[^'\\\n]|\\.)*')
    | (?P<number>-?(?:0[xX][0-9a-fA-F]+|\d+\.\d*(?:[eE][+-]?\d+)?|\.\d+(?:[eE][+-]?\d+)?|\d+(?:[eE][+-]?\d+)?))
    | (?P<ident>\.?[A-Za-z_][\w.]*)
    | (?P<symbol>[{}\[\]()<>=;,:-])
    """,
    re.VERBOSE | re.DOTALL,
)


def _tokenize(text: str, source: str) -> list[_Token]:
    tokens: list[_Token] = []
    line = 1
    pos = 0
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if match is None:
            raise SchemaError(f"Unexpected character {text[pos]!r}", source, line)
        kind = match.lastgroup or ""
        value = match.group()
        if kind not in ("ws", "comment"):
            tokens.append(_Token(kind, value, line))
        line += value.count("\n")
        pos = match.end()
    return tokens


@dataclass
class _RawField:
    name: str
    number: int
    type_ref: str
    label: Label
    line: int
    oneof: str | None = None
    default: _Token | None = None
    packed: bool | None = None


@dataclass
class _RawMessage:
    full_name: str
    line: int
    fields: list[_RawField] = field(default_factory=list)


class _ProtoParser:
    """Recursive-descent parser for the subset of proto2/proto3 feeds use."""

    def __init__(self, text: str, source: str) -> None:
        self.source = source
        self.tokens = _tokenize(text, source)
        self.pos = 0
        self.syntax = "proto2"
        self.package = ""
        self.messages: dict[str, _RawMessage] = {}
        self.enums: dict[str, EnumDescriptor] = {}

    # token helpers

    def _error(self, message: str, token: _Token | None = None) -> SchemaError:
        token = token or self._peek()
        return SchemaError(message, self.source, token.line if token else None)

    def _peek(self) -> _Token | None:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _next(self) -> _Token:
        token = self._peek()
        if token is None:
            last = self.tokens[-1].line if self.tokens else None
            raise SchemaError("Unexpected end of schema", self.source, last)
        self.pos += 1
        return token

    def _expect(self, value: str) -> _Token:
        token = self._next()
        if token.value != value:
            raise self._error(f"Expected '{value}', found '{token.value}'", token)
        return token

    def _expect_kind(self, kind: str) -> _Token:
        token = self._next()
        if token.kind != kind:
            raise self._error(f"Expected {kind}, found '{token.value}'", token)
        return token

    def _skip_statement(self) -> None:
        depth = 0
        while True:
            token = self._next()
            if token.value in ("(", "["):
                depth += 1
            elif token.value in (")", "]"):
                depth -= 1
            elif token.value == ";" and depth == 0:
                return

    def _int(self, token: _Token) -> int:
        if token.kind != "number":
            raise self._error(f"Expected integer, found '{token.value}'", token)
        try:
            return int(token.value, 0)
        except ValueError:
            raise self._error(f"Invalid integer '{token.value}'", token) from None

    def _scoped(self, scope: str, name: str) -> str:
        return f"{scope}.{name}" if scope else name

    # grammar

    def parse(self) -> None:
        while (token := self._peek()) is not None:
            match token.value:
                case "syntax":
                    self._next()
                    self._expect("=")
                    syntax = self._expect_kind("string").value[1:-1]
                    if syntax not in ("proto2", "proto3"):
                        raise self._error(f"Unsupported syntax '{syntax}'", token)
                    self.syntax = syntax
                    self._expect(";")
                case "package":
                    self._next()
                    self.package = self._expect_kind("ident").value
                    self._expect(";")
                case "import" | "option":
                    self._skip_statement()
                case "message":
                    self._next()
                    self._parse_message(self.package)
                case "enum":
                    self._next()
                    self._parse_enum(self.package)
                case ";":
                    self._next()
                case _:
                    raise self._error(f"Unsupported top-level statement '{token.value}'", token)

    def _parse_message(self, scope: str) -> None:
        name_token = self._expect_kind("ident")
        full_name = self._scoped(scope, name_token.value)
        if full_name in self.messages or full_name in self.enums:
            raise self._error(f"Duplicate type '{full_name}'", name_token)
        message = _RawMessage(full_name, name_token.line)
        self.messages[full_name] = message
        self._expect("{")
        while (token := self._next()).value != "}":
            match token.value:
                case "message":
                    self._parse_message(full_name)
                case "enum":
                    self._parse_enum(full_name)
                case "oneof":
                    self._parse_oneof(message)
                case "extensions" | "reserved" | "option":
                    self._skip_statement()
                case ";":
                    pass
                case "map" | "extend" | "group" | "service":
                    raise self._error(f"Unsupported construct '{token.value}'", token)
                case _:
                    self.pos -= 1
                    message.fields.append(self._parse_field(oneof=None))

    def _parse_oneof(self, message: _RawMessage) -> None:
        name = self._expect_kind("ident").value
        self._expect("{")
        while (token := self._next()).value != "}":
            if token.value == "option":
                self._skip_statement()
            elif token.value != ";":
                self.pos -= 1
                raw = self._parse_field(oneof=name)
                if raw.label is not Label.OPTIONAL:
                    raise self._error(f"Oneof member '{raw.name}' cannot be {raw.label.value}", token)
                message.fields.append(raw)

    def _parse_field(self, oneof: str | None) -> _RawField:
        token = self._next()
        label = Label.OPTIONAL
        if token.value in ("optional", "required", "repeated"):
            if oneof is not None:
                raise self._error("Oneof members cannot have a label", token)
            label = Label(token.value)
            token = self._next()
        elif oneof is None and self.syntax == "proto2":
            raise self._error(f"Field '{token.value}' is missing a label", token)
        if token.value == "group":
            raise self._error("Groups are not supported", token)
        if token.kind != "ident":
            raise self._error(f"Expected field type, found '{token.value}'", token)
        name = self._expect_kind("ident").value
        self._expect("=")
        raw = _RawField(
            name=name,
            number=self._int(self._next()),
            type_ref=token.value,
            label=label,
            line=token.line,
            oneof=oneof,
        )
        if (peek := self._peek()) is not None and peek.value == "[":
            self._next()
            self._parse_field_options(raw)
        self._expect(";")
        return raw

    def _parse_field_options(self, raw: _RawField) -> None:
        while True:
            option_name = ""
            while (token := self._next()).value != "=":
                option_name += token.value
            value = self._next()
            if value.value == "-":
                following = self._next()
                value = _Token(following.kind, "-" + following.value, following.line)
            if option_name == "default":
                raw.default = value
            elif option_name == "packed":
                raw.packed = value.value == "true"
            separator = self._next()
            if separator.value == "]":
                return
            if separator.value != ",":
                raise self._error(f"Expected ',' or ']', found '{separator.value}'", separator)

    def _parse_enum(self, scope: str) -> None:
        name_token = self._expect_kind("ident")
        full_name = self._scoped(scope, name_token.value)
        if full_name in self.messages or full_name in self.enums:
            raise self._error(f"Duplicate type '{full_name}'", name_token)
        values: dict[str, int] = {}
        allow_alias = False
        self._expect("{")
        while (token := self._next()).value != "}":
            if token.value == "option":
                start = self.pos
                self._skip_statement()
                option = [t.value for t in self.tokens[start : self.pos]]
                if option[:3] == ["allow_alias", "=", "true"]:
                    allow_alias = True
            elif token.value == "reserved":
                self._skip_statement()
            elif token.value != ";":
                if token.kind != "ident":
                    raise self._error(f"Expected enum value name, found '{token.value}'", token)
                self._expect("=")
                number = self._int(self._next())
                if token.value in values:
                    raise self._error(f"Duplicate enum value '{token.value}'", token)
                if number in values.values() and not allow_alias:
                    raise self._error(f"Duplicate enum number {number} in '{full_name}'", token)
                values[token.value] = number
                if (peek := self._peek()) is not None and peek.value == "[":
                    self._skip_statement()
                    continue
                self._expect(";")
        if not values:
            raise self._error(f"Enum '{full_name}' has no values", name_token)
        self.enums[full_name] = EnumDescriptor(full_name, values)

    # resolution

    def _resolve_ref(self, ref: str, scope: str) -> str | None:
        if ref.startswith("."):
            name = ref[1:]
            return name if name in self.messages or name in self.enums else None
        parts = scope.split(".") if scope else []
        for i in range(len(parts), -1, -1):
            candidate = ".".join([*parts[:i], ref])
            if candidate in self.messages or candidate in self.enums:
                return candidate
        return None

    def _default_value(self, raw: _RawField, kind: str, type_name: str | None) -> Any:
        token = raw.default
        if token is None:
            return None
        if raw.label is Label.REPEATED or kind == "message":
            raise self._error(f"Field '{raw.name}' cannot have a default", token)
        value = token.value
        try:
            if kind == "enum" and type_name is not None:
                enum = self.enums[type_name]
                if value not in enum.values:
                    raise self._error(f"Unknown enum default '{value}' for '{raw.name}'", token)
                return enum.values[value]
            if kind == "bool":
                if value not in ("true", "false"):
                    raise self._error(f"Invalid bool default '{value}'", token)
                return value == "true"
            if kind in FLOAT_KINDS:
                return float(value)
            if kind in ("string", "bytes"):
                if token.kind != "string":
                    raise self._error(f"Invalid {kind} default '{value}'", token)
                text = codecs.decode(value[1:-1], "unicode_escape")
                return text.encode("latin-1") if kind == "bytes" else text
            return int(value, 0)
        except ValueError:
            raise self._error(f"Invalid default '{value}' for '{raw.name}'", token) from None

    def _build_field(self, message: _RawMessage, raw: _RawField) -> FieldDescriptor:
        def error(text: str) -> SchemaError:
            return SchemaError(f"{message.full_name}.{raw.name}: {text}", self.source, raw.line)

        if raw.number < 1 or raw.number > MAX_FIELD_NUMBER:
            raise error(f"field number {raw.number} out of range")
        if raw.number in RESERVED_FIELD_NUMBERS:
            raise error(f"field number {raw.number} is reserved")

        type_name: str | None = None
        if raw.type_ref in SCALAR_WIRE_TYPES:
            kind = raw.type_ref
        else:
            type_name = self._resolve_ref(raw.type_ref, message.full_name)
            if type_name is None:
                raise error(f"unknown type '{raw.type_ref}' has no wire type")
            kind = "message" if type_name in self.messages else "enum"

        packed = raw.packed
        if packed is None:
            packed = self.syntax == "proto3" and raw.label is Label.REPEATED
        if packed and (raw.label is not Label.REPEATED or kind not in PACKABLE_KINDS):
            if raw.packed:
                raise error("only repeated numeric fields can be packed")
            packed = False

        return FieldDescriptor(
            name=raw.name,
            number=raw.number,
            kind=kind,
            label=raw.label,
            type_name=type_name,
            oneof=raw.oneof,
            default=self._default_value(raw, kind, type_name),
            packed=packed,
        )

    def build(self) -> SchemaRegistry:
        descriptors: dict[str, MessageDescriptor] = {}
        for message in self.messages.values():
            numbers: set[int] = set()
            names: set[str] = set()
            fields: list[FieldDescriptor] = []
            for raw in message.fields:
                if raw.number in numbers:
                    raise SchemaError(
                        f"{message.full_name}: duplicate field number {raw.number}",
                        self.source,
                        raw.line,
                    )
                if raw.name in names:
                    raise SchemaError(
                        f"{message.full_name}: duplicate field name '{raw.name}'",
                        self.source,
                        raw.line,
                    )
                numbers.add(raw.number)
                names.add(raw.name)
                fields.append(self._build_field(message, raw))
            descriptors[message.full_name] = MessageDescriptor(message.full_name, tuple(fields))
        return SchemaRegistry(descriptors, self.enums, source=self.source)


def parse_schema(text: str, source: str = "<string>") -> SchemaRegistry:
    """Parse ``.proto`` source text into a registry.

    Args:
        text: Schema source text.
        source: Name used in error messages.

    Returns:
        A read-only SchemaRegistry.

    Raises:
        SchemaError: If the schema is malformed or uses unsupported constructs.
    """
    parser = _ProtoParser(text, source)
    parser.parse()
    if not parser.messages:
        raise SchemaError("Schema defines no message types", source)
    return parser.build()


def load_schema(source: Path | str) -> SchemaRegistry:
    """Load a ``.proto`` file into a registry.

    Args:
        source: Path to the schema file.

    Returns:
        A read-only SchemaRegistry.

    Raises:
        SchemaError: If the file is missing, unreadable or malformed.
    """
    path = Path(source)
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise SchemaError(f"Cannot read schema: {e}", str(path)) from e
    return parse_schema(text, source=str(path))


def default_schema_path() -> Path:
    """Path to the GTFS-Realtime schema shipped with the package."""
    return Path(str(resources.files("gtfs_rt_transcoder").joinpath("proto", BUNDLED_SCHEMA)))
