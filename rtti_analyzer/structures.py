"""RTTI Structure Reader.

Interprets raw bytes of the image as the four MSVC x64 RTTI layouts.
All 32-bit "pointer" fields hold offsets from the module base address,
never absolute addresses.
"""
from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import List, Optional

from .address_space import AddressFault, SegmentAddressSpace

# Signature of an x64 RTTICompleteObjectLocator
COL_SIG_REV1 = 1

# Mangled name of the type_info class itself
TYPE_INFO_MANGLED_NAME = ".?AVtype_info@@"


# ============================================================================
# RTTI STRUCTURES
# ============================================================================

@dataclass
class TypeDescriptor:
    """TypeDescriptor (type_info object)"""
    address: int
    vftable: int  # 00: points to type_info's vftable
    spare: int    # 08: unused
    name: str     # 10: null-terminated mangled name

    NAME_OFFSET = 0x10

    @property
    def name_address(self) -> int:
        return self.address + self.NAME_OFFSET


@dataclass
class PMD:
    """Pointer-to-member displacement"""
    mdisp: int  # member displacement
    pdisp: int  # vbtable displacement
    vdisp: int  # displacement inside vbtable


@dataclass
class BaseClassDescriptor:
    """RTTIBaseClassDescriptor"""
    address: int
    type_descriptor: int  # 00: OFFSET of the TypeDescriptor
    num_contained_bases: int  # 04
    where: PMD  # 08
    attributes: int  # 14

    FORMAT = '<IIiiiI'
    SIZE = struct.calcsize(FORMAT)  # 24

    @classmethod
    def unpack(cls, address: int, raw: bytes) -> "BaseClassDescriptor":
        td, contained, mdisp, pdisp, vdisp, attrs = struct.unpack(cls.FORMAT, raw)
        return cls(address, td, contained, PMD(mdisp, pdisp, vdisp), attrs)


@dataclass
class ClassHierarchyDescriptor:
    """RTTIClassHierarchyDescriptor"""
    address: int
    signature: int  # 00
    attributes: int  # 04
    num_base_classes: int  # 08
    base_class_array: int  # 0C: OFFSET of the RTTIBaseClassArray

    FORMAT = '<IIII'
    SIZE = struct.calcsize(FORMAT)  # 16

    @classmethod
    def unpack(cls, address: int, raw: bytes) -> "ClassHierarchyDescriptor":
        return cls(address, *struct.unpack(cls.FORMAT, raw))


@dataclass
class CompleteObjectLocator:
    """RTTICompleteObjectLocator"""
    address: int
    signature: int  # 00: COL_SIG_REV1 on x64
    offset: int  # 04: offset from complete object to this sub-object
    cd_offset: int  # 08: constructor displacement offset
    type_descriptor: int  # 0C: OFFSET of the TypeDescriptor
    class_descriptor: int  # 10: OFFSET of the RTTIClassHierarchyDescriptor
    self_offset: int  # 14: OFFSET of this locator

    FORMAT = '<IIIIII'
    SIZE = struct.calcsize(FORMAT)  # 24
    TYPE_DESCRIPTOR_FIELD = 0x0C

    @classmethod
    def unpack(cls, address: int, raw: bytes) -> "CompleteObjectLocator":
        return cls(address, *struct.unpack(cls.FORMAT, raw))

    @property
    def is_valid(self) -> bool:
        """Signature matches and the locator is unambiguous."""
        return self.signature == COL_SIG_REV1 and self.cd_offset == 0


# ============================================================================
# READER
# ============================================================================

class RttiReader:
    """Reads RTTI structures through a SegmentAddressSpace.

    Each read validates that the structure lies in the segment the compiler
    places it in. Faults propagate as AddressFault; the callers decide how
    to degrade.
    """

    def __init__(self, space: SegmentAddressSpace):
        self.space = space

    def resolve(self, offset: int) -> int:
        """Absolute address of a module-relative offset field."""
        return self.space.absolute(offset)

    def type_descriptor(self, address: int) -> TypeDescriptor:
        space = self.space
        vftable = space.read_u64(address, space.data)
        spare = space.read_u64(address + 8, space.data)
        name = space.read_cstring(address + TypeDescriptor.NAME_OFFSET, space.data)
        return TypeDescriptor(address, vftable, spare, name)

    def complete_object_locator(self, address: int) -> CompleteObjectLocator:
        raw = self.space.read(address, CompleteObjectLocator.SIZE, self.space.rdata)
        return CompleteObjectLocator.unpack(address, raw)

    def class_hierarchy(self, address: int) -> ClassHierarchyDescriptor:
        raw = self.space.read(address, ClassHierarchyDescriptor.SIZE, self.space.rdata)
        return ClassHierarchyDescriptor.unpack(address, raw)

    def base_class(self, address: int) -> BaseClassDescriptor:
        raw = self.space.read(address, BaseClassDescriptor.SIZE, self.space.rdata)
        return BaseClassDescriptor.unpack(address, raw)

    def base_class_array(self, hierarchy: ClassHierarchyDescriptor) -> List[BaseClassDescriptor]:
        """All BaseClassDescriptors of a hierarchy, self entry first."""
        array = self.resolve(hierarchy.base_class_array)
        bases = []
        for i in range(hierarchy.num_base_classes):
            entry = self.space.read_u32(array + i * 4, self.space.rdata)
            bases.append(self.base_class(self.resolve(entry)))
        return bases

    def meta_locator(self, vtable: int) -> CompleteObjectLocator:
        """The CompleteObjectLocator referenced by the meta field at vtable - 8."""
        col = self.space.read_u64(vtable - 8, self.space.rdata)
        return self.complete_object_locator(col)

    def vtable_entry(self, vtable: int, index: int) -> int:
        return self.space.read_u64(vtable + index * 8, self.space.rdata)

    def try_type_descriptor(self, address: int) -> Optional[TypeDescriptor]:
        try:
            return self.type_descriptor(address)
        except AddressFault:
            return None
