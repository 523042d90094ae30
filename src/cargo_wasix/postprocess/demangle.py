"""Demangle Rust legacy (``_ZN...E``) symbol names.

Anything that is not a well-formed legacy symbol is returned unchanged, as is
a symbol whose demangled form would itself demangle further.

Known limitation: only the ``_ZN`` and ``__ZN`` prefixes are recognised. The
bare ``ZN`` form and v0 (``_R...``) symbols are left untouched rather than
demangled.
"""

from __future__ import annotations

_PREFIXES = ("__ZN", "_ZN")
_LLVM_SUFFIX = ".llvm."

_ESCAPES = {
    "SP": "@",
    "BP": "*",
    "RF": "&",
    "LT": "<",
    "GT": ">",
    "LP": "(",
    "RP": ")",
    "C": ",",
}


def demangle(name: str) -> str:
    for prefix in _PREFIXES:
        if name.startswith(prefix):
            demangled = _demangle_legacy(name[len(prefix) :])
            if demangled is None or demangle(demangled) != demangled:
                return name
            return demangled
    return name


def _demangle_legacy(inner: str) -> str | None:
    if not inner.isascii():
        return None
    elements: list[str] = []
    pos = 0
    while True:
        if pos >= len(inner):
            return None
        if inner[pos] == "E":
            pos += 1
            break
        start = pos
        while pos < len(inner) and inner[pos].isdigit():
            pos += 1
        if start == pos:
            return None
        length = int(inner[start:pos])
        if length == 0 or pos + length > len(inner):
            return None
        element = _decode_element(inner[pos : pos + length])
        if element is None:
            return None
        elements.append(element)
        pos += length

    if not elements:
        return None
    suffix = inner[pos:]
    if suffix and not suffix.startswith("."):
        return None
    if suffix.startswith(_LLVM_SUFFIX):
        suffix = ""
    return "::".join(elements) + suffix


def _decode_element(element: str) -> str | None:
    if element.startswith("_$"):
        element = element[1:]
    out: list[str] = []
    pos = 0
    while pos < len(element):
        char = element[pos]
        if char == "$":
            end = element.find("$", pos + 1)
            if end == -1:
                return None
            decoded = _decode_escape(element[pos + 1 : end])
            if decoded is None:
                return None
            out.append(decoded)
            pos = end + 1
        elif element.startswith("..", pos):
            out.append("::")
            pos += 2
        else:
            out.append(char)
            pos += 1
    return "".join(out)


def _decode_escape(escape: str) -> str | None:
    if escape in _ESCAPES:
        return _ESCAPES[escape]
    if escape.startswith("u") and len(escape) > 1:
        try:
            return chr(int(escape[1:], 16))
        except (ValueError, OverflowError):
            return None
    return None
