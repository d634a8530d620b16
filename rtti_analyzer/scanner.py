"""VTable Discovery Scanner.

Brute-force search of the image for RTTI TypeDescriptors and the vtables
that belong to them. No symbols are needed; the scan relies on three
address patterns:

1. A TypeDescriptor in .data starts with the address of type_info's vftable.
2. A CompleteObjectLocator in .rdata holds the TypeDescriptor's module
   offset at +0x0C.
3. A vtable in .rdata is preceded by a "meta" pointer to its locator, and
   its first entry points into .text.
"""
from __future__ import annotations

import struct
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from .address_space import AddressFault, SegmentAddressSpace
from .structures import CompleteObjectLocator, RttiReader


class VTableMap:
    """TypeDescriptor address -> vtables of that type, primary vtable first.

    Keys keep discovery order, which is ascending TypeDescriptor address.
    """

    def __init__(self):
        self._map: Dict[int, List[int]] = {}

    def add(self, type_descriptor: int, vtable: int, sub_object_offset: int) -> None:
        vtables = self._map.setdefault(type_descriptor, [])
        if sub_object_offset == 0:
            vtables.insert(0, vtable)
        else:
            vtables.append(vtable)

    def primary_vtable(self, type_descriptor: int) -> Optional[int]:
        vtables = self._map.get(type_descriptor)
        return vtables[0] if vtables else None

    def vtables(self, type_descriptor: int) -> List[int]:
        return list(self._map.get(type_descriptor, []))

    def items(self) -> Iterator[Tuple[int, List[int]]]:
        for td, vtables in self._map.items():
            yield td, list(vtables)

    def to_dict(self) -> Dict[int, List[int]]:
        return {td: list(vtables) for td, vtables in self._map.items()}

    @property
    def vtable_count(self) -> int:
        return sum(len(v) for v in self._map.values())

    def __contains__(self, type_descriptor: int) -> bool:
        return type_descriptor in self._map

    def __iter__(self):
        return iter(self._map)

    def __len__(self) -> int:
        return len(self._map)

    def __eq__(self, other) -> bool:
        if not isinstance(other, VTableMap):
            return NotImplemented
        return list(self.items()) == list(other.items())

    def __repr__(self) -> str:
        return f"VTableMap({len(self)} types, {self.vtable_count} vtables)"


class VTableScanner:
    """Locates every TypeDescriptor and its vtables in an image."""

    def __init__(self, space: SegmentAddressSpace, type_info_vtbl: int,
                 progress_callback: Optional[Callable[[str, int, int], None]] = None):
        """
        Args:
            space: Address space of the image
            type_info_vtbl: Absolute address of type_info's vftable
            progress_callback: Called as (message, current, total) per candidate
        """
        self.space = space
        self.reader = RttiReader(space)
        self.type_info_vtbl = type_info_vtbl
        self.progress_callback = progress_callback

    def _report_progress(self, message: str, current: int = 0, total: int = 0):
        if self.progress_callback:
            self.progress_callback(message, current, total)

    def discover(self) -> VTableMap:
        """Run all three passes and return the populated VTableMap."""
        vtable_map = VTableMap()
        candidates = list(self.find_type_descriptors())
        total = len(candidates)
        for index, td in enumerate(candidates, 1):
            self._report_progress("Scanning type descriptors", index, total)
            for col in self.find_locators(td):
                for vtable in self.find_vtables(col):
                    vtable_map.add(self.reader.resolve(col.type_descriptor), vtable, col.offset)
        return vtable_map

    # ------------------------------------------------------------------
    # Pass 1: TypeDescriptors in .data
    # ------------------------------------------------------------------

    def find_type_descriptors(self) -> Iterator[int]:
        """Addresses in .data (8-byte stride) holding the type_info vftable address."""
        if not 0 <= self.type_info_vtbl < 1 << 64:
            return
        needle = struct.pack('<Q', self.type_info_vtbl)
        yield from self.space.data.find_aligned(needle, 8)

    # ------------------------------------------------------------------
    # Pass 2: CompleteObjectLocators in .rdata
    # ------------------------------------------------------------------

    def find_locators(self, type_descriptor: int) -> Iterator[CompleteObjectLocator]:
        """Valid locators whose pTypeDescriptor field holds the descriptor's offset."""
        offset = self.space.relative(type_descriptor)
        if not 0 <= offset < 1 << 32:
            return
        needle = struct.pack('<I', offset)
        rdata = self.space.rdata
        for hit in rdata.find_aligned(needle, 4):
            address = hit - CompleteObjectLocator.TYPE_DESCRIPTOR_FIELD
            try:
                col = self.reader.complete_object_locator(address)
            except AddressFault:
                continue
            if col.is_valid:
                yield col

    # ------------------------------------------------------------------
    # Pass 3: vtables in .rdata
    # ------------------------------------------------------------------

    def find_vtables(self, col: CompleteObjectLocator) -> Iterator[int]:
        """Vtables whose meta field points at `col` and whose first slot is code."""
        needle = struct.pack('<Q', col.address)
        for meta in self.space.rdata.find_aligned(needle, 8):
            vtable = meta + 8
            try:
                first = self.reader.vtable_entry(vtable, 0)
            except AddressFault:
                continue
            if self.space.in_text(first):
                yield vtable
