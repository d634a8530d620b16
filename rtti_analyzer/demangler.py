"""Name Demangler for MSVC RTTI type names.

Turns a TypeDescriptor name such as ``.?AVBaseFormComponent@@`` into
``class BaseFormComponent``. On Windows the system undecorator in
dbghelp.dll is used; elsewhere (or when it refuses a name) simple
class/struct/union/enum names are decoded directly. Anything else is
returned unmodified.
"""
from __future__ import annotations

import sys
from typing import Dict, List, Optional

try:
    import ctypes
    HAS_CTYPES = True
except ImportError:
    ctypes = None
    HAS_CTYPES = False

# UnDecorateSymbolName flags
UNDNAME_COMPLETE = 0x0000

RTTI_DESCRIPTOR_SUFFIX = " `RTTI Type Descriptor'"
ANONYMOUS_NAMESPACE = "`anonymous namespace'"

# Type code after ".?A" -> C++ keyword
_TYPE_KEYWORDS = {
    'V': 'class',
    'U': 'struct',
    'T': 'union',
    'W4': 'enum',
}


class NameDemangler:
    """Demangles RTTI type names, caching every result."""

    BUFFER_SIZE = 1024

    def __init__(self, use_system: bool = True):
        self._undecorate = None
        self._cache: Dict[str, str] = {}
        if use_system and sys.platform == 'win32' and HAS_CTYPES:
            self._init_dbghelp()

    def _init_dbghelp(self) -> None:
        """Bind dbghelp!UnDecorateSymbolName."""
        try:
            undecorate = ctypes.windll.dbghelp.UnDecorateSymbolName
            undecorate.argtypes = [ctypes.c_char_p, ctypes.c_char_p, ctypes.c_uint, ctypes.c_uint]
            undecorate.restype = ctypes.c_uint
            self._undecorate = undecorate
        except (AttributeError, OSError):
            self._undecorate = None

    @property
    def has_system_undecorator(self) -> bool:
        return self._undecorate is not None

    def demangle(self, mangled: str) -> str:
        """Return the readable name, or `mangled` itself when it cannot be decoded."""
        if not mangled:
            return mangled
        cached = self._cache.get(mangled)
        if cached is not None:
            return cached

        result = self._system_demangle(mangled) or self.decode_type_name(mangled) or mangled
        self._cache[mangled] = result
        return result

    def _system_demangle(self, mangled: str) -> Optional[str]:
        if self._undecorate is None:
            return None

        # A stripped name gets turned into an 'RTTI Type Descriptor' symbol
        symbol = mangled
        if symbol.startswith('.'):
            symbol = "??_R0" + symbol[1:] + "@8"

        buf = ctypes.create_string_buffer(self.BUFFER_SIZE)
        try:
            ok = self._undecorate(symbol.encode('latin-1'), buf, self.BUFFER_SIZE, UNDNAME_COMPLETE)
        except (OSError, UnicodeEncodeError):
            return None
        if not ok:
            return None
        return buf.value.decode('latin-1').replace(RTTI_DESCRIPTOR_SUFFIX, "")

    @staticmethod
    def decode_type_name(mangled: str) -> Optional[str]:
        """Decode a non-template RTTI type name without the system undecorator.

        Handles ``.?A<kind><name>@<scope>@...@@`` with back-references and
        anonymous namespaces. Returns None for anything more involved.
        """
        if not mangled.startswith('.?A'):
            return None
        rest = mangled[3:]
        keyword = None
        for code, word in _TYPE_KEYWORDS.items():
            if rest.startswith(code):
                keyword = word
                rest = rest[len(code):]
                break
        if keyword is None:
            return None

        names: List[str] = []
        pos = 0
        while True:
            if pos >= len(rest):
                return None
            ch = rest[pos]
            if ch == '@':
                pos += 1
                break
            if ch.isdigit():
                index = int(ch)
                if index >= len(names):
                    return None
                names.append(names[index])
                pos += 1
                continue
            end = rest.find('@', pos)
            if end == -1:
                return None
            fragment = rest[pos:end]
            if fragment.startswith('?A'):
                names.append(ANONYMOUS_NAMESPACE)
            elif fragment.startswith('?') or not fragment:
                # Templates, operators and other special names
                return None
            else:
                names.append(fragment)
            pos = end + 1

        if pos != len(rest) or not names:
            return None
        return f"{keyword} {'::'.join(reversed(names))}"
