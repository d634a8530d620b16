"""Image sources for RTTI analysis.

Builds a SegmentAddressSpace from one of:
- a raw memory image (bytes of the loaded module, offset 0 == base address)
- a PE32+ file on disk, mapped into its virtual layout
- a full-memory Windows minidump (via the minidump library)

Also renders the module summary (base address and section table) and can
locate type_info's vftable when the layout does not provide it.
"""
from __future__ import annotations

import os
import struct
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, List, Optional

from .address_space import Segment, SegmentAddressSpace
from .config import ImageLayout
from .structures import TYPE_INFO_MANGLED_NAME, TypeDescriptor

# Optional minidump library
try:
    from minidump.minidumpfile import MinidumpFile
    HAS_MINIDUMP = True
except ImportError:
    MinidumpFile = None
    HAS_MINIDUMP = False

PE32_PLUS_MAGIC = 0x20B
SECTION_HEADER_SIZE = 40
PE_HEADER_WINDOW = 0x1000

# Section name -> ImageLayout field prefix
SEGMENT_SECTIONS = {
    ".text": "text",
    ".rdata": "rdata",
    ".data": "data",
}


class ImageLoadError(Exception):
    """Raised when an image cannot be read or mapped."""


@dataclass
class SectionInfo:
    """IMAGE_SECTION_HEADER essentials (addresses are module-relative)"""
    name: str
    virtual_address: int
    virtual_size: int
    raw_size: int = 0
    raw_pointer: int = 0


@dataclass
class PeHeaders:
    """What the loader needs from the PE headers"""
    image_base: int
    size_of_image: int
    size_of_headers: int
    sections: List[SectionInfo] = field(default_factory=list)


@dataclass
class LoadedImage:
    """An image ready for analysis."""
    path: Optional[str]
    base_address: int
    layout: ImageLayout
    space: SegmentAddressSpace
    sections: List[SectionInfo] = field(default_factory=list)
    source: str = "raw"


# ============================================================================
# PE HEADERS
# ============================================================================

def parse_pe_headers(data: bytes) -> PeHeaders:
    """Parse the DOS, file and optional headers and the section table of a PE32+ image."""
    if len(data) < 0x40 or data[:2] != b"MZ":
        raise ImageLoadError("Missing MZ header")

    e_lfanew = struct.unpack_from("<I", data, 0x3C)[0]
    if e_lfanew <= 0 or e_lfanew + 24 > len(data):
        raise ImageLoadError("Bad e_lfanew")
    if data[e_lfanew:e_lfanew + 4] != b"PE\x00\x00":
        raise ImageLoadError("Missing PE signature")

    file_header_off = e_lfanew + 4
    _, num_sections, _, _, _, size_opt_header, _ = struct.unpack_from("<HHIIIHH", data, file_header_off)

    opt_off = file_header_off + 20
    if opt_off + size_opt_header > len(data) or size_opt_header < 64:
        raise ImageLoadError("Truncated optional header")
    magic = struct.unpack_from("<H", data, opt_off)[0]
    if magic != PE32_PLUS_MAGIC:
        raise ImageLoadError(f"Not a PE32+ image (magic 0x{magic:X})")

    image_base = struct.unpack_from("<Q", data, opt_off + 24)[0]
    size_of_image, size_of_headers = struct.unpack_from("<II", data, opt_off + 56)

    sections = []
    sections_off = opt_off + size_opt_header
    for i in range(num_sections):
        sec_off = sections_off + i * SECTION_HEADER_SIZE
        if sec_off + SECTION_HEADER_SIZE > len(data):
            break
        # Name is 8 bytes and not null-terminated when all 8 are used
        name = data[sec_off:sec_off + 8].rstrip(b"\x00").decode("ascii", errors="ignore")
        virtual_size, virtual_address, size_raw, ptr_raw = struct.unpack_from("<IIII", data, sec_off + 8)
        sections.append(SectionInfo(name, virtual_address, virtual_size, size_raw, ptr_raw))

    return PeHeaders(image_base, size_of_image, size_of_headers, sections)


def layout_from_sections(sections: List[SectionInfo], base: Optional[ImageLayout] = None) -> ImageLayout:
    """Take segment bounds from the .text, .rdata and .data section headers.

    type_info_vtbl and pure_call are kept from `base` (0 when unknown).
    """
    offsets: Dict[str, int] = {}
    for section in sections:
        prefix = SEGMENT_SECTIONS.get(section.name)
        if prefix is None or f"{prefix}_begin" in offsets:
            continue
        size = section.virtual_size or section.raw_size
        offsets[f"{prefix}_begin"] = section.virtual_address
        offsets[f"{prefix}_end"] = section.virtual_address + size

    missing = [name for name, prefix in SEGMENT_SECTIONS.items() if f"{prefix}_begin" not in offsets]
    if missing:
        raise ImageLoadError(f"Image has no {', '.join(missing)} section")
    if base is None:
        base = ImageLayout(type_info_vtbl=0, pure_call=0)
    return replace(base, **offsets)


# ============================================================================
# LOADERS
# ============================================================================

def load_raw_image(path: str, base_address: int, layout: ImageLayout) -> LoadedImage:
    """Load a flat memory image of a module mapped at `base_address`."""
    try:
        with open(path, "rb") as f:
            data = f.read()
    except OSError as e:
        raise ImageLoadError(f"Cannot read {path}: {e}") from e

    sections: List[SectionInfo] = []
    if data[:2] == b"MZ":
        try:
            sections = parse_pe_headers(data[:PE_HEADER_WINDOW]).sections
        except ImageLoadError:
            sections = []

    space = SegmentAddressSpace.from_image(base_address, data, layout)
    return LoadedImage(path, base_address, layout, space, sections, "raw")


def map_pe_image(data: bytes, headers: PeHeaders) -> bytearray:
    """Lay out file sections at their virtual addresses."""
    image = bytearray(headers.size_of_image)
    head = min(headers.size_of_headers, len(data), len(image))
    image[:head] = data[:head]
    for section in headers.sections:
        size = section.raw_size
        if section.virtual_size:
            size = min(size, section.virtual_size)
        start = section.virtual_address
        if start >= len(image):
            continue
        size = max(0, min(size, len(image) - start, len(data) - section.raw_pointer))
        image[start:start + size] = data[section.raw_pointer:section.raw_pointer + size]
    return image


def load_pe_image(path: str, base_address: Optional[int] = None,
                  layout: Optional[ImageLayout] = None) -> LoadedImage:
    """Map an on-disk PE32+ file as the loader would (without relocations).

    Args:
        path: Path to the .exe/.dll
        base_address: Load address; defaults to the header's ImageBase, which is
            the only base at which un-relocated pointers are correct
        layout: Segment layout; derived from the section table when omitted
    """
    try:
        with open(path, "rb") as f:
            data = f.read()
    except OSError as e:
        raise ImageLoadError(f"Cannot read {path}: {e}") from e

    headers = parse_pe_headers(data)
    if layout is None:
        layout = layout_from_sections(headers.sections)
    if base_address is None:
        base_address = headers.image_base

    image = map_pe_image(data, headers)
    space = SegmentAddressSpace.from_image(base_address, image, layout)
    return LoadedImage(path, base_address, layout, space, headers.sections, "pe")


def _find_dump_module(md, module_name: Optional[str]):
    modules = getattr(getattr(md, "modules", None), "modules", None) or []
    if not modules:
        raise ImageLoadError("Minidump has no module list")
    if not module_name:
        return modules[0]
    wanted = module_name.lower()
    for mod in modules:
        name = str(getattr(mod, "name", "") or "")
        if os.path.basename(name.replace("\\", "/")).lower() == wanted or name.lower() == wanted:
            return mod
    raise ImageLoadError(f"Module {module_name} not found in minidump")


def read_dump_range(reader, address: int, size: int) -> bytes:
    """Read [address, address + size) from a minidump, across memory regions.

    A single reader.read() must stay inside one captured region, and a
    module's sections are routinely split over several adjacent ones
    (e.g. WriteCopy pages next to pages that became ReadWrite). Bytes not
    captured by any region read as zero.

    Raises:
        ImageLoadError: if no byte of the range is in the dump
    """
    end = address + size
    buf = bytearray(size)
    captured = 0
    regions = sorted(reader.memory_segments, key=lambda r: r.start_virtual_address)
    for region in regions:
        lo = max(address, region.start_virtual_address)
        hi = min(end, region.end_virtual_address)
        if lo >= hi:
            continue
        try:
            chunk = reader.read(lo, hi - lo)
        except Exception as e:
            raise ImageLoadError(f"Cannot read 0x{lo:X}-0x{hi:X} from the dump: {e}") from e
        buf[lo - address:lo - address + len(chunk)] = chunk
        captured += len(chunk)
    if not captured:
        raise ImageLoadError(f"0x{address:X}-0x{end:X} is not in the dump")
    return bytes(buf)


def load_minidump_image(path: str, module_name: Optional[str] = None,
                        layout: Optional[ImageLayout] = None) -> LoadedImage:
    """Read a module's segments out of a full-memory minidump.

    Args:
        path: Path to the .dmp file
        module_name: Module file name (e.g. "SkyrimSE.exe"); first module when omitted
        layout: Segment layout; derived from the in-memory PE headers when omitted
    """
    if not HAS_MINIDUMP:
        raise ImageLoadError("The minidump package is required to read .dmp files")

    try:
        md = MinidumpFile.parse(path)
        reader = md.get_reader()
    except Exception as e:
        raise ImageLoadError(f"Minidump parsing error: {e}") from e

    mod = _find_dump_module(md, module_name)
    base_address = int(mod.baseaddress)

    sections: List[SectionInfo] = []
    try:
        sections = parse_pe_headers(read_dump_range(reader, base_address, PE_HEADER_WINDOW)).sections
    except ImageLoadError as e:
        if layout is None:
            raise ImageLoadError(f"Cannot read PE headers of {getattr(mod, 'name', '?')} from the dump: {e}") from e
    if layout is None:
        layout = layout_from_sections(sections)

    def read_segment(name: str, begin: int, end: int) -> Segment:
        try:
            data = read_dump_range(reader, base_address + begin, end - begin)
        except ImageLoadError as e:
            raise ImageLoadError(f"{name} of {getattr(mod, 'name', '?')} is not in the dump: {e}") from e
        return Segment(name, base_address + begin, data)

    space = SegmentAddressSpace(
        base_address,
        read_segment(".text", layout.text_begin, layout.text_end),
        read_segment(".rdata", layout.rdata_begin, layout.rdata_end),
        read_segment(".data", layout.data_begin, layout.data_end),
    )
    return LoadedImage(path, base_address, layout, space, sections, "minidump")


# ============================================================================
# HELPERS
# ============================================================================

def locate_type_info_vtable(space: SegmentAddressSpace) -> Optional[int]:
    """Find type_info's vftable through its own TypeDescriptor.

    The descriptor's name ".?AVtype_info@@" sits 0x10 bytes into it, right
    after the pVFTable and spare fields.
    """
    needle = TYPE_INFO_MANGLED_NAME.encode("ascii") + b"\x00"
    for hit in space.data.find_aligned(needle, 8):
        td = hit - TypeDescriptor.NAME_OFFSET
        if space.in_data(td, 8):
            return space.read_u64(td, space.data)
    return None


def module_summary(image: LoadedImage) -> List[str]:
    """Base address and section table of a loaded image."""
    lines = ["-" * 30 + " MODULE SUMMARY " + "-" * 34]
    if image.path:
        lines.append(f"File name: {Path(image.path).name}")
    lines.append(f"Base address: 0x{image.base_address:08x}")
    lines.append("Sections:")
    for i, section in enumerate(image.sections):
        start = image.base_address + section.virtual_address
        end = start + section.virtual_size
        lines.append(f"  {i:3d}: 0x{start:08x} ... 0x{end:08x} {section.name:<10s} "
                     f"({section.virtual_size} bytes)")
    layout = image.layout
    lines.append("Segments:")
    for name, begin, end in (
        (".text", layout.text_begin, layout.text_end),
        (".rdata", layout.rdata_begin, layout.rdata_end),
        (".data", layout.data_begin, layout.data_end),
    ):
        lines.append(f"  {name:<6s} 0x{image.base_address + begin:08x} ... 0x{image.base_address + end:08x}")
    lines.append("-" * 80)
    return lines
