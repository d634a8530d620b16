"""Segment Address Space for RTTI analysis.

A read-only view over the three segments of a loaded image that the RTTI
scan cares about:
- .text  (executable code)
- .rdata (read-only data: vtables, locators, hierarchy descriptors)
- .data  (read-write data: type descriptors)

Every read is addressed by absolute virtual address and bounds-checked
against the segment that holds it. A read that leaves its segment raises
AddressFault, which the structure readers convert into "not present".
"""
from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Iterator, List, Optional


class AddressFault(Exception):
    """Raised when a read touches memory outside the mapped segments."""

    def __init__(self, address: int, size: int = 1, segment: Optional[str] = None):
        self.address = address
        self.size = size
        self.segment = segment
        where = f" in {segment}" if segment else ""
        super().__init__(f"Unmapped read of {size} byte(s) at 0x{address:X}{where}")


@dataclass(frozen=True)
class Segment:
    """One contiguous, immutable byte range of the image."""
    name: str
    start: int  # Absolute virtual address of the first byte
    data: bytes

    @property
    def end(self) -> int:
        """Absolute address one past the last mapped byte."""
        return self.start + len(self.data)

    @property
    def size(self) -> int:
        return len(self.data)

    def contains(self, address: int, size: int = 1) -> bool:
        """True when [address, address + size) lies entirely in the segment."""
        return self.start <= address and address + size <= self.end

    def read(self, address: int, size: int) -> bytes:
        if size < 0 or not self.contains(address, size):
            raise AddressFault(address, size, self.name)
        offset = address - self.start
        return self.data[offset:offset + size]

    def find_aligned(self, needle: bytes, stride: int) -> Iterator[int]:
        """Yield absolute addresses of `needle` at `stride` multiples from the start.

        Uses bytes.find instead of unpacking every word; hits that fall off
        the stride grid are skipped.
        """
        data = self.data
        pos = data.find(needle)
        while pos != -1:
            if pos % stride == 0:
                yield self.start + pos
            pos = data.find(needle, pos + 1)


class SegmentAddressSpace:
    """Bounds-checked accessors over the code, rdata and data segments."""

    CSTRING_LIMIT = 4096

    def __init__(self, base_address: int, text: Segment, rdata: Segment, data: Segment):
        self.base_address = base_address
        self.text = text
        self.rdata = rdata
        self.data = data

    @classmethod
    def from_image(cls, base_address: int, image: bytes, layout) -> "SegmentAddressSpace":
        """Carve the three segments out of a flat image mapped at `base_address`.

        Args:
            base_address: Runtime load address of the image
            image: Bytes of the image laid out as in memory (offset 0 == base)
            layout: ImageLayout with module-relative segment bounds
        """
        def carve(name: str, begin: int, end: int) -> Segment:
            begin = max(0, min(begin, len(image)))
            end = max(begin, min(end, len(image)))
            return Segment(name, base_address + begin, bytes(image[begin:end]))

        return cls(
            base_address,
            carve(".text", layout.text_begin, layout.text_end),
            carve(".rdata", layout.rdata_begin, layout.rdata_end),
            carve(".data", layout.data_begin, layout.data_end),
        )

    @property
    def segments(self) -> List[Segment]:
        return [self.text, self.rdata, self.data]

    def segment_of(self, address: int, size: int = 1) -> Optional[Segment]:
        for seg in self.segments:
            if seg.contains(address, size):
                return seg
        return None

    def in_text(self, address: int) -> bool:
        return self.text.contains(address)

    def in_data(self, address: int, size: int = 1) -> bool:
        return self.data.contains(address, size)

    def relative(self, address: int) -> int:
        """Module-relative offset of an absolute address."""
        return address - self.base_address

    def absolute(self, offset: int) -> int:
        """Absolute address of a module-relative offset."""
        return self.base_address + offset

    # ------------------------------------------------------------------
    # Raw reads
    # ------------------------------------------------------------------

    def read(self, address: int, size: int, segment: Optional[Segment] = None) -> bytes:
        """Read `size` bytes, optionally requiring them to lie in `segment`."""
        if segment is not None:
            return segment.read(address, size)
        seg = self.segment_of(address, size)
        if seg is None:
            raise AddressFault(address, size)
        return seg.read(address, size)

    def _unpack(self, fmt: str, address: int, segment: Optional[Segment]) -> int:
        size = struct.calcsize(fmt)
        return struct.unpack(fmt, self.read(address, size, segment))[0]

    def read_u8(self, address: int, segment: Optional[Segment] = None) -> int:
        return self._unpack('<B', address, segment)

    def read_u16(self, address: int, segment: Optional[Segment] = None) -> int:
        return self._unpack('<H', address, segment)

    def read_u32(self, address: int, segment: Optional[Segment] = None) -> int:
        return self._unpack('<I', address, segment)

    def read_i32(self, address: int, segment: Optional[Segment] = None) -> int:
        return self._unpack('<i', address, segment)

    def read_u64(self, address: int, segment: Optional[Segment] = None) -> int:
        return self._unpack('<Q', address, segment)

    def read_cstring(self, address: int, segment: Optional[Segment] = None,
                     limit: Optional[int] = None) -> str:
        """Read a null-terminated byte string.

        The terminator must be found inside the segment and within `limit`
        bytes; otherwise the read faults.
        """
        seg = segment or self.segment_of(address)
        if seg is None or not seg.contains(address):
            raise AddressFault(address, 1, segment.name if segment else None)
        limit = limit or self.CSTRING_LIMIT
        offset = address - seg.start
        stop = seg.data.find(b'\x00', offset, offset + limit)
        if stop == -1:
            raise AddressFault(address, limit, seg.name)
        return seg.data[offset:stop].decode('latin-1')

    def read_window(self, address: int, size: int, segment: Segment) -> bytes:
        """Read up to `size` bytes, clipped at the end of `segment`.

        Returns an empty string when `address` is outside the segment.
        """
        if not segment.contains(address):
            return b''
        offset = address - segment.start
        return segment.data[offset:offset + size]
