"""Section-level WebAssembly module codec.

Only the framing is decoded: the preamble, every section as an opaque
``(id, payload)`` pair, custom section names and the function-name
subsection of the ``name`` section. Everything else is carried through
byte for byte.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from dataclasses import dataclass, field

from cargo_wasix.errors import ParseError

MAGIC = b"\x00asm"
VERSION_1 = b"\x01\x00\x00\x00"

CUSTOM_SECTION = 0
NAME_SECTION = "name"
PRODUCERS_SECTION = "producers"
DEBUG_PREFIX = ".debug_"

FUNCTION_NAMES = 1


def read_uleb(data: bytes, offset: int) -> tuple[int, int]:
    """Decode an unsigned LEB128 at *offset*; return (value, next offset)."""
    result = 0
    shift = 0
    while True:
        if offset >= len(data):
            raise ParseError("unexpected end of data in LEB128", context={"offset": str(offset)})
        byte = data[offset]
        offset += 1
        result |= (byte & 0x7F) << shift
        if byte & 0x80 == 0:
            return result, offset
        shift += 7
        if shift > 35:
            raise ParseError("LEB128 value too large", context={"offset": str(offset)})


def write_uleb(value: int) -> bytes:
    if value < 0:
        raise ValueError("LEB128 value must be non-negative")
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def read_name(data: bytes, offset: int) -> tuple[str, int]:
    length, offset = read_uleb(data, offset)
    end = offset + length
    if end > len(data):
        raise ParseError("name runs past the end of its section", context={"offset": str(offset)})
    try:
        return data[offset:end].decode("utf-8"), end
    except UnicodeDecodeError as exc:
        raise ParseError("name is not valid utf-8", context={"offset": str(offset)}) from exc


def write_name(name: str) -> bytes:
    encoded = name.encode("utf-8")
    return write_uleb(len(encoded)) + encoded


@dataclass(slots=True)
class Section:
    id: int
    payload: bytes

    @property
    def custom_name(self) -> str | None:
        if self.id != CUSTOM_SECTION:
            return None
        name, _ = read_name(self.payload, 0)
        return name

    def custom_body(self) -> bytes:
        _, offset = read_name(self.payload, 0)
        return self.payload[offset:]

    def encode(self) -> bytes:
        return bytes([self.id]) + write_uleb(len(self.payload)) + self.payload

    @classmethod
    def custom(cls, name: str, body: bytes) -> Section:
        return cls(id=CUSTOM_SECTION, payload=write_name(name) + body)


@dataclass(slots=True)
class Module:
    sections: list[Section] = field(default_factory=list)
    version: bytes = VERSION_1

    @classmethod
    def parse(cls, data: bytes) -> Module:
        if data[:4] != MAGIC:
            raise ParseError("not a WebAssembly module: bad magic number")
        if len(data) < 8:
            raise ParseError("truncated WebAssembly header")
        module = cls(version=data[4:8])
        offset = 8
        while offset < len(data):
            section_id = data[offset]
            size, start = read_uleb(data, offset + 1)
            end = start + size
            if end > len(data):
                raise ParseError(
                    "section runs past the end of the module",
                    context={"section": str(section_id), "offset": str(offset)},
                )
            payload = data[start:end]
            if section_id == CUSTOM_SECTION:
                read_name(payload, 0)
            module.sections.append(Section(id=section_id, payload=payload))
            offset = end
        return module

    def encode(self) -> bytes:
        return MAGIC + self.version + b"".join(section.encode() for section in self.sections)

    def custom_sections(self) -> Iterator[Section]:
        return (section for section in self.sections if section.id == CUSTOM_SECTION)

    def custom_names(self) -> list[str]:
        return [section.custom_name or "" for section in self.custom_sections()]

    def retain_custom(self, keep: Callable[[str], bool]) -> None:
        self.sections = [
            section
            for section in self.sections
            if section.id != CUSTOM_SECTION or keep(section.custom_name or "")
        ]


def rename_functions(body: bytes, rename: Callable[[str], str]) -> bytes:
    """Rewrite the function-name map of a ``name`` section body."""
    out = bytearray()
    offset = 0
    while offset < len(body):
        subsection_id = body[offset]
        size, start = read_uleb(body, offset + 1)
        end = start + size
        if end > len(body):
            raise ParseError("name subsection runs past the end of the section")
        content = body[start:end]
        if subsection_id == FUNCTION_NAMES:
            content = _rename_map(content, rename)
        out.append(subsection_id)
        out += write_uleb(len(content))
        out += content
        offset = end
    return bytes(out)


def _rename_map(content: bytes, rename: Callable[[str], str]) -> bytes:
    count, offset = read_uleb(content, 0)
    out = bytearray(write_uleb(count))
    for _ in range(count):
        index, offset = read_uleb(content, offset)
        name, offset = read_name(content, offset)
        out += write_uleb(index)
        out += write_name(rename(name))
    return bytes(out)


def function_names(body: bytes) -> dict[int, str]:
    """Return the function-name map of a ``name`` section body."""
    offset = 0
    while offset < len(body):
        subsection_id = body[offset]
        size, start = read_uleb(body, offset + 1)
        offset = start + size
        if subsection_id != FUNCTION_NAMES:
            continue
        content = body[start:offset]
        count, cursor = read_uleb(content, 0)
        names: dict[int, str] = {}
        for _ in range(count):
            index, cursor = read_uleb(content, cursor)
            names[index], cursor = read_name(content, cursor)
        return names
    return {}


def is_debug_section(name: str) -> bool:
    return name.startswith(DEBUG_PREFIX)
