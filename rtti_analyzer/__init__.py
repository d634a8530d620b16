"""MSVC RTTI Analyzer package.

This package recovers C++ class information from a loaded x64 MSVC image
without debug symbols:
- Brute-force discovery of RTTI TypeDescriptors, CompleteObjectLocators and vtables
- Class hierarchy reconstruction and parent vtable resolution
- Pattern-based decompilation of trivial virtual functions
- Pseudo-declaration output annotated with @override / @add
- Image loading from raw memory images, PE files and full-memory minidumps
"""
from .address_space import (
    AddressFault,
    Segment,
    SegmentAddressSpace,
)
from .structures import (
    COL_SIG_REV1,
    TypeDescriptor,
    PMD,
    BaseClassDescriptor,
    ClassHierarchyDescriptor,
    CompleteObjectLocator,
    RttiReader,
)
from .config import ImageLayout, LayoutError, load_layout
from .demangler import NameDemangler
from .scanner import VTableMap, VTableScanner
from .hierarchy import HierarchyReconstructor, TypeHierarchy, NO_RTTI
from .decompiler import MicroDecompiler, DecompiledFunction, Idiom, IDIOMS
from .printer import HierarchyPrinter, format_declaration
from .image_loader import (
    ImageLoadError,
    LoadedImage,
    SectionInfo,
    load_raw_image,
    load_pe_image,
    load_minidump_image,
    locate_type_info_vtable,
    module_summary,
    HAS_MINIDUMP,
)
from .core import RttiAnalyzer, AnalysisReport

__all__ = [
    # Address space
    "AddressFault",
    "Segment",
    "SegmentAddressSpace",
    # RTTI structures
    "COL_SIG_REV1",
    "TypeDescriptor",
    "PMD",
    "BaseClassDescriptor",
    "ClassHierarchyDescriptor",
    "CompleteObjectLocator",
    "RttiReader",
    # Configuration
    "ImageLayout",
    "LayoutError",
    "load_layout",
    # Analysis
    "NameDemangler",
    "VTableMap",
    "VTableScanner",
    "HierarchyReconstructor",
    "TypeHierarchy",
    "NO_RTTI",
    "MicroDecompiler",
    "DecompiledFunction",
    "Idiom",
    "IDIOMS",
    "HierarchyPrinter",
    "format_declaration",
    # Image sources
    "ImageLoadError",
    "LoadedImage",
    "SectionInfo",
    "load_raw_image",
    "load_pe_image",
    "load_minidump_image",
    "locate_type_info_vtable",
    "module_summary",
    "HAS_MINIDUMP",
    # Orchestration
    "RttiAnalyzer",
    "AnalysisReport",
]

__version__ = "1.0.0"
