"""Hierarchy Reconstructor.

Walks CompleteObjectLocator -> ClassHierarchyDescriptor -> BaseClassArray
for a vtable to name its class, find the vtable of its direct parent and
render the class tree.

Every lookup here runs on addresses that may come from coincidental byte
patterns, so AddressFault is caught at each public entry point and turned
into "no RTTI".

Virtual bases are not resolved: only PMD.mdisp is used, so hierarchies with
virtual inheritance show a plausible but unverified displacement.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional

from .address_space import AddressFault, SegmentAddressSpace
from .demangler import NameDemangler
from .scanner import VTableMap
from .structures import COL_SIG_REV1, ClassHierarchyDescriptor, RttiReader, TypeDescriptor

NO_RTTI = "<no rtti>"


@dataclass
class TypeHierarchy:
    """Name, sub-object offset and hierarchy descriptor of one vtable."""
    name: str
    offset: int
    hierarchy: ClassHierarchyDescriptor


class HierarchyReconstructor:
    """RTTI lookups keyed by vtable address."""

    def __init__(self, space: SegmentAddressSpace, type_info_vtbl: int,
                 demangler: Optional[NameDemangler] = None):
        self.space = space
        self.reader = RttiReader(space)
        self.type_info_vtbl = type_info_vtbl
        self.demangler = demangler or NameDemangler()

    # ------------------------------------------------------------------
    # Names
    # ------------------------------------------------------------------

    def type_name(self, td: TypeDescriptor) -> str:
        """Demangled name of a TypeDescriptor, whichever type_info it belongs to."""
        return self.demangler.demangle(td.name)

    def type_descriptor_of(self, vtable: int) -> Optional[int]:
        """Address of the TypeDescriptor reached through the vtable's meta field."""
        try:
            col = self.reader.meta_locator(vtable)
            if col.signature != COL_SIG_REV1:
                return None
            address = self.reader.resolve(col.type_descriptor)
            self.reader.type_descriptor(address)
            return address
        except AddressFault:
            return None

    def class_name_of(self, vtable: int) -> str:
        """Demangled class name for a vtable, or '<no rtti>'."""
        address = self.type_descriptor_of(vtable)
        if address is None:
            return NO_RTTI
        td = self.reader.try_type_descriptor(address)
        return self.type_name(td) if td else NO_RTTI

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def type_hierarchy_of(self, vtable: int) -> Optional[TypeHierarchy]:
        """Name, offset and hierarchy descriptor for an in-image type, else None."""
        try:
            col = self.reader.meta_locator(vtable)
            if col.signature != COL_SIG_REV1:
                return None
            td = self.reader.type_descriptor(self.reader.resolve(col.type_descriptor))
            if td.vftable != self.type_info_vtbl:
                return None
            hierarchy = self.reader.class_hierarchy(self.reader.resolve(col.class_descriptor))
            return TypeHierarchy(self.type_name(td), col.offset, hierarchy)
        except AddressFault:
            return None

    def parent_vtable_of(self, vtable: int, vtable_map: VTableMap) -> Optional[int]:
        """Primary vtable of the direct base whose displacement matches this sub-object.

        Entry 0 of the base class array is the class itself and is skipped.
        Returns None for root classes and unresolvable hierarchies.
        """
        try:
            col = self.reader.meta_locator(vtable)
            if not col.class_descriptor:
                return None
            hierarchy = self.reader.class_hierarchy(self.reader.resolve(col.class_descriptor))
            if not hierarchy.base_class_array:
                return None
            array = self.reader.resolve(hierarchy.base_class_array)
            for i in range(1, hierarchy.num_base_classes):
                entry = self.space.read_u32(array + i * 4, self.space.rdata)
                base = self.reader.base_class(self.reader.resolve(entry))
                if base.where.mdisp & 0xFFFFFFFF != col.offset:
                    continue
                parent = vtable_map.primary_vtable(self.reader.resolve(base.type_descriptor))
                if parent is not None:
                    return parent
        except AddressFault:
            return None
        return None

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    def render_hierarchy(self, vtable: int, verbose: bool = False) -> List[str]:
        """Class tree of a vtable as text lines.

        The first line is ``<Name> +<offset> (_vtbl=<vtable>)``; each base
        class entry follows as ``<mdisp>: <indent><Name>``. Indentation is
        driven by a per-row count of descendants still to be printed.
        """
        info = self.type_hierarchy_of(vtable)
        if info is None:
            return [NO_RTTI]

        lines = [f"{info.name} +{info.offset:04X} (_vtbl={vtable:08X})"]
        try:
            bases = self.reader.base_class_array(info.hierarchy)
        except AddressFault:
            return lines

        depth = [0] * len(bases)
        for i, base in enumerate(bases):
            depth[i] = base.num_contained_bases + 1
            indent = []
            for n in range(len(depth)):
                if depth[n] > 0:
                    if n > 0:
                        indent.append("|   ")
                    depth[n] -= 1

            td_address = self.reader.resolve(base.type_descriptor)
            td = self.reader.try_type_descriptor(td_address)
            name = self.type_name(td) if td else NO_RTTI
            line = f"{base.where.mdisp & 0xFFFFFFFF:04X}: {''.join(indent)}{name}"
            if verbose:
                line += f" ... {td_address:08X}"
            lines.append(line)
        return lines
