"""Core RTTI analysis logic.

Wires the scanner, hierarchy reconstructor, micro-decompiler and printer
together for one analysis pass over one image.
"""
from __future__ import annotations

import sys
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from .address_space import SegmentAddressSpace
from .config import ImageLayout, LayoutError
from .decompiler import MicroDecompiler
from .demangler import NameDemangler
from .hierarchy import HierarchyReconstructor
from .image_loader import LoadedImage, locate_type_info_vtable
from .printer import HierarchyPrinter
from .scanner import VTableMap, VTableScanner


def safe_print(msg: str):
    """Print message safely, handling unicode encoding issues on Windows."""
    try:
        print(msg)
    except UnicodeEncodeError:
        encoding = sys.stdout.encoding or 'utf-8'
        print(msg.encode(encoding, errors='replace').decode(encoding, errors='replace'))


@dataclass
class AnalysisReport:
    """Result of one analysis pass."""
    base_address: int
    type_info_vtbl: int
    vtable_map: VTableMap
    lines: List[str] = field(default_factory=list)

    @property
    def type_count(self) -> int:
        return len(self.vtable_map)

    @property
    def vtable_count(self) -> int:
        return self.vtable_map.vtable_count


class RttiAnalyzer:
    """One analysis pass over one image.

    Usage:
        analyzer = RttiAnalyzer(space, layout)
        report = analyzer.analyze()
        for line in report.lines:
            print(line)
    """

    # Print [RTTI] progress messages
    VERBOSE = False

    def __init__(self, space: SegmentAddressSpace, layout: ImageLayout,
                 verbose: Optional[bool] = None,
                 progress_callback: Optional[Callable[[str, int, int], None]] = None,
                 demangler: Optional[NameDemangler] = None,
                 type_info_vtbl: Optional[int] = None):
        """
        Args:
            space: Address space of the image
            layout: Offsets of this image build
            verbose: Overrides VERBOSE for this instance
            progress_callback: Callback for progress updates (message, current, total)
            demangler: Shared demangler (a new one by default)
            type_info_vtbl: Absolute type_info vftable address; defaults to
                base + layout.type_info_vtbl

        Raises:
            LayoutError: if neither `type_info_vtbl` nor the layout says where
                type_info's vftable is
        """
        self.space = space
        self.layout = layout
        self.verbose = self.VERBOSE if verbose is None else verbose
        self.progress_callback = progress_callback
        self.demangler = demangler or NameDemangler()

        if type_info_vtbl is None:
            # Offset 0 is the image base, never a vftable
            if not layout.type_info_vtbl:
                raise LayoutError("type_info vftable is unknown; set RTTI_TYPE_INFO_VTBL or use --profile")
            type_info_vtbl = space.absolute(layout.type_info_vtbl)
        self.type_info_vtbl = type_info_vtbl
        self.pure_call = space.absolute(layout.pure_call) if layout.pure_call else None

        self.hierarchy = HierarchyReconstructor(space, self.type_info_vtbl, self.demangler)
        self.decompiler = MicroDecompiler(space, self.demangler)
        self.printer = HierarchyPrinter(space, self.hierarchy, self.decompiler, self.pure_call)
        self._vtable_map: Optional[VTableMap] = None

    @classmethod
    def for_image(cls, image: LoadedImage, auto_type_info: bool = False, **kwargs) -> "RttiAnalyzer":
        """Analyzer for a loaded image.

        With `auto_type_info`, or when the layout leaves type_info_vtbl at 0,
        type_info's vftable is located from its own TypeDescriptor. Raises
        LayoutError when it is needed but cannot be found.
        """
        if auto_type_info or not image.layout.type_info_vtbl:
            located = locate_type_info_vtable(image.space)
            if located is not None:
                kwargs.setdefault("type_info_vtbl", located)
        return cls(image.space, image.layout, **kwargs)

    def _log(self, message: str):
        """Log a message if verbose mode is enabled."""
        if self.verbose:
            safe_print(f"[RTTI] {message}")

    def _report_progress(self, message: str, current: int = 0, total: int = 0):
        """Report progress to callback if available."""
        if self.progress_callback:
            try:
                self.progress_callback(message, current, total)
            except Exception as e:
                self._log(f"Progress callback failed: {e}")

    def discover(self) -> VTableMap:
        """Build (once) and return the VTableMap."""
        if self._vtable_map is None:
            self._log(f"Base address 0x{self.space.base_address:X}, type_info vftable 0x{self.type_info_vtbl:X}")
            for seg in self.space.segments:
                self._log(f"{seg.name:<6} 0x{seg.start:X} ... 0x{seg.end:X} ({seg.size:,} bytes)")
            scanner = VTableScanner(self.space, self.type_info_vtbl, self._report_progress)
            self._vtable_map = scanner.discover()
            self._log(f"Found {len(self._vtable_map)} types with {self._vtable_map.vtable_count} vtables")
        return self._vtable_map

    def render(self) -> List[str]:
        """Class declarations for every discovered type."""
        vtable_map = self.discover()
        lines = self.printer.render(vtable_map)
        self._log(f"Rendered {len(lines)} lines")
        return lines

    def analyze(self) -> AnalysisReport:
        lines = self.render()
        return AnalysisReport(self.space.base_address, self.type_info_vtbl, self.discover(), lines)

    def describe_vtable(self, vtable: int, verbose: bool = True) -> List[str]:
        """Class tree and declarations of a single vtable."""
        vtable_map = self.discover()
        lines = self.hierarchy.render_hierarchy(vtable, verbose=verbose)
        lines.extend(self.printer.render_vtable(vtable, vtable_map))
        return lines
