"""Shared fixtures: a builder for synthetic x64 MSVC images."""
import os
import struct
import sys
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import pytest

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from rtti_analyzer.address_space import SegmentAddressSpace
from rtti_analyzer.config import ImageLayout

BASE = 0x140000000

LAYOUT = ImageLayout(
    text_begin=0x1000,
    text_end=0x3000,
    rdata_begin=0x3000,
    rdata_end=0x6000,
    data_begin=0x6000,
    data_end=0x7000,
    type_info_vtbl=0x3008,
    pure_call=0x2FF0,
)


@dataclass
class ClassInfo:
    """Addresses of one synthetic class's RTTI."""
    name: str
    td: int
    chd: int
    col: int
    vtable: int


class ImageBuilder:
    """Lays out code, RTTI structures and vtables in a flat image.

    Every address handed out is absolute (BASE + offset).
    """

    def __init__(self, layout: ImageLayout = LAYOUT, base: int = BASE):
        self.layout = layout
        self.base = base
        self.image = bytearray(layout.data_end)
        self._text = layout.text_begin
        self._rdata = layout.rdata_begin + 0x20  # type_info's vftable lives below
        self._data = layout.data_begin
        self.tds: Dict[str, int] = {}

        # type_info's vftable: meta + one slot pointing at code
        self.put_u64(self.type_info_vtbl, self.func())
        # _purecall trampoline
        self.image[layout.pure_call:layout.pure_call + 2] = b"\xFF\x25"

    @property
    def type_info_vtbl(self) -> int:
        return self.base + self.layout.type_info_vtbl

    @property
    def pure_call(self) -> int:
        return self.base + self.layout.pure_call

    # ------------------------------------------------------------------
    # Raw writes
    # ------------------------------------------------------------------

    def _off(self, address: int) -> int:
        return address - self.base

    def put(self, address: int, data: bytes) -> None:
        off = self._off(address)
        self.image[off:off + len(data)] = data

    def put_u32(self, address: int, value: int) -> None:
        struct.pack_into("<I", self.image, self._off(address), value & 0xFFFFFFFF)

    def put_u64(self, address: int, value: int) -> None:
        struct.pack_into("<Q", self.image, self._off(address), value)

    @staticmethod
    def _align(value: int, alignment: int) -> int:
        return (value + alignment - 1) & ~(alignment - 1)

    def _alloc_rdata(self, size: int, alignment: int = 8) -> int:
        self._rdata = self._align(self._rdata, alignment)
        address = self.base + self._rdata
        self._rdata += size
        assert self._rdata <= self.layout.rdata_end
        return address

    # ------------------------------------------------------------------
    # Code
    # ------------------------------------------------------------------

    def func(self, code: bytes = b"\xCC\xCC") -> int:
        """Place a function in .text and return its address."""
        self._text = self._align(self._text, 0x10)
        address = self.base + self._text
        self.put(address, code)
        self._text += max(len(code), 1)
        assert self._text <= self.layout.pure_call
        return address

    # ------------------------------------------------------------------
    # RTTI
    # ------------------------------------------------------------------

    def type_descriptor(self, mangled: str, vftable: Optional[int] = None) -> int:
        if mangled in self.tds:
            return self.tds[mangled]
        self._data = self._align(self._data, 8)
        address = self.base + self._data
        name = mangled.encode("ascii") + b"\x00"
        self.put_u64(address, self.type_info_vtbl if vftable is None else vftable)
        self.put_u64(address + 8, 0)
        self.put(address + 16, name)
        self._data += 16 + len(name)
        self.tds[mangled] = address
        return address

    def base_class(self, td: int, contained: int, mdisp: int = 0) -> int:
        address = self._alloc_rdata(24, 4)
        self.put(address, struct.pack("<IIiiiI", self._off(td), contained, mdisp, -1, 0, 0x40))
        return address

    def hierarchy(self, entries: Sequence[Tuple[str, int, int]]) -> int:
        """ClassHierarchyDescriptor for (mangled name, contained bases, mdisp) entries."""
        bcds = [self.base_class(self.type_descriptor(name), contained, mdisp)
                for name, contained, mdisp in entries]
        array = self._alloc_rdata(4 * len(bcds) + 4, 4)
        for i, bcd in enumerate(bcds):
            self.put_u32(array + 4 * i, self._off(bcd))
        chd = self._alloc_rdata(16, 4)
        self.put(chd, struct.pack("<IIII", 0, 0, len(bcds), self._off(array)))
        return chd

    def locator(self, td: int, chd: int, offset: int = 0, signature: int = 1,
                cd_offset: int = 0) -> int:
        col = self._alloc_rdata(24, 8)
        self.put(col, struct.pack("<IIIIII", signature, offset, cd_offset,
                                  self._off(td), self._off(chd), self._off(col)))
        return col

    def vtable(self, col: int, funcs: Sequence[int]) -> int:
        """Meta field, slots, and a terminating null slot."""
        meta = self._alloc_rdata(8 * (len(funcs) + 2), 8)
        self.put_u64(meta, col)
        for i, func in enumerate(funcs):
            self.put_u64(meta + 8 + 8 * i, func)
        self.put_u64(meta + 8 + 8 * len(funcs), 0)
        return meta + 8

    def add_class(self, mangled: str, ancestors: Sequence[str] = (),
                  funcs: Optional[Sequence[int]] = None, offset: int = 0,
                  entries: Optional[Sequence[Tuple[str, int, int]]] = None,
                  chd: Optional[int] = None) -> ClassInfo:
        """One class with a single-inheritance chain (nearest ancestor first)."""
        td = self.type_descriptor(mangled)
        if chd is None:
            if entries is None:
                chain = [mangled] + list(ancestors)
                entries = [(name, len(chain) - 1 - i, 0) for i, name in enumerate(chain)]
            chd = self.hierarchy(entries)
        col = self.locator(td, chd, offset)
        if funcs is None:
            funcs = [self.func()]
        vtable = self.vtable(col, funcs)
        return ClassInfo(mangled, td, chd, col, vtable)

    def type_info_descriptor(self) -> int:
        """type_info's own TypeDescriptor, as the compiler emits it."""
        return self.type_descriptor(".?AVtype_info@@")

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    def space(self) -> SegmentAddressSpace:
        return SegmentAddressSpace.from_image(self.base, bytes(self.image), self.layout)

    def to_bytes(self) -> bytes:
        return bytes(self.image)


def build_pe(builder: ImageBuilder, compact: bool = False, magic: int = 0x20B) -> bytes:
    """Wrap a builder's image in PE32+ headers.

    By default each section's file offset equals its RVA; with `compact`
    the sections are packed from 0x400 on, as a linker writes them.
    """
    layout = builder.layout
    ranges = [(".text", layout.text_begin, layout.text_end),
              (".rdata", layout.rdata_begin, layout.rdata_end),
              (".data", layout.data_begin, layout.data_end)]
    image = builder.to_bytes()
    size_of_headers = 0x400

    if compact:
        out = bytearray(size_of_headers)
        raw_pointers = []
        for _, begin, end in ranges:
            raw_pointers.append(len(out))
            out += image[begin:end]
    else:
        out = bytearray(image)
        raw_pointers = [begin for _, begin, _ in ranges]

    e_lfanew = 0x80
    out[0:2] = b"MZ"
    struct.pack_into("<I", out, 0x3C, e_lfanew)
    out[e_lfanew:e_lfanew + 4] = b"PE\x00\x00"
    size_opt_header = 0xF0
    struct.pack_into("<HHIIIHH", out, e_lfanew + 4, 0x8664, len(ranges), 0, 0, 0, size_opt_header, 0x22)
    opt = e_lfanew + 24
    struct.pack_into("<H", out, opt, magic)
    struct.pack_into("<Q", out, opt + 24, builder.base)
    struct.pack_into("<II", out, opt + 56, len(image), size_of_headers)
    sec = opt + size_opt_header
    for i, (name, begin, end) in enumerate(ranges):
        header = name.encode("ascii").ljust(8, b"\x00")
        header += struct.pack("<IIII", end - begin, begin, end - begin, raw_pointers[i])
        header += b"\x00" * 16
        out[sec + i * 40:sec + (i + 1) * 40] = header
    return bytes(out)


@pytest.fixture
def builder():
    return ImageBuilder()


@pytest.fixture
def low_builder():
    """Image mapped below 4 GiB, so absolute addresses fit in an imm32."""
    return ImageBuilder(base=0x10000000)


@pytest.fixture
def three_level(builder):
    """Base <- Mid <- Derived, sharing slots 0-2 and diverging at slot 3."""
    shared = [builder.func() for _ in range(3)]
    base = builder.add_class(".?AVBase@@", funcs=shared + [builder.func(b"\x32\xC0\xC3")])
    mid = builder.add_class(".?AVMid@@", [".?AVBase@@"],
                            funcs=shared + [builder.func(b"\xB0\x01\xC3")])
    derived = builder.add_class(".?AVDerived@@", [".?AVMid@@", ".?AVBase@@"],
                                funcs=shared + [builder.func(b"\x48\x8B\xC1\xC3"), builder.func()])
    return builder, base, mid, derived
