"""Hierarchy Printer.

Pretty prints every discovered class: a comment block with its class tree,
then one pseudo declaration per virtual function it adds or overrides.
"""
from __future__ import annotations

from typing import Callable, List, Optional

from .address_space import AddressFault, SegmentAddressSpace
from .decompiler import MicroDecompiler
from .hierarchy import HierarchyReconstructor
from .scanner import VTableMap
from .structures import RttiReader

BLOCK_OPEN = "/*" + "=" * 78
BLOCK_CLOSE = "=" * 78 + "*/"

UNKNOWN_RETURN = "????"
UNKNOWN_PARAMS = "????"
PURE_BODY = "(pure)"

# Declarations are padded so the address comments line up
COMMENT_COLUMN = 40
OVERRIDE_SUFFIX = " override"
MIN_PADDING = 4


def format_declaration(index: int, address: int, ret: str, params: str, body: str,
                       override: bool) -> str:
    """One ``virtual ... Unk_XXX(...)`` line."""
    line = f"    virtual {ret:<6} Unk_{index:03X}({params})"
    pad = COMMENT_COLUMN - len(params)
    if override:
        pad -= len(OVERRIDE_SUFFIX)
        line += OVERRIDE_SUFFIX
    line += ";" + " " * max(pad, MIN_PADDING)
    line += f"// {address:08X}"
    if body:
        line += f" {body}"
    return line


class HierarchyPrinter:
    """Renders a VTableMap as class declarations."""

    def __init__(self, space: SegmentAddressSpace, hierarchy: HierarchyReconstructor,
                 decompiler: MicroDecompiler, pure_call: Optional[int] = None):
        """
        Args:
            space: Address space of the image
            hierarchy: Reconstructor sharing the same space
            decompiler: Micro-decompiler for vtable targets
            pure_call: Absolute address of the _purecall trampoline, if known
        """
        self.space = space
        self.reader = RttiReader(space)
        self.hierarchy = hierarchy
        self.decompiler = decompiler
        self.pure_call = pure_call

    def render(self, vtable_map: VTableMap) -> List[str]:
        lines: List[str] = []
        self.print_to(vtable_map, lines.append)
        return lines

    def print_to(self, vtable_map: VTableMap, sink: Callable[[str], None]) -> None:
        """Emit every line for every type in map order."""
        for _, vtables in vtable_map.items():
            if not vtables:
                continue
            sink(BLOCK_OPEN)
            for line in self.hierarchy.render_hierarchy(vtables[0]):
                sink(line)
            sink(BLOCK_CLOSE)
            for vtable in vtables:
                for line in self.render_vtable(vtable, vtable_map):
                    sink(line)
            sink("")

    def _slot(self, vtable: int, index: int) -> Optional[int]:
        """Slot value if it points into .text, else None."""
        try:
            value = self.reader.vtable_entry(vtable, index)
        except AddressFault:
            return None
        return value if self.space.in_text(value) else None

    def render_vtable(self, vtable: int, vtable_map: VTableMap) -> List[str]:
        """Declarations for the slots this vtable adds or overrides.

        The vtable ends at the first slot that does not point into .text.
        Slots equal to the parent's are inherited unchanged and skipped.
        """
        lines: List[str] = []
        parent = self.hierarchy.parent_vtable_of(vtable, vtable_map)
        announced_override = False
        announced_add = False

        index = 0
        while True:
            func = self._slot(vtable, index)
            if func is None:
                break

            if parent is not None:
                inherited = self._slot(parent, index)
                if inherited is None:
                    # Parent exhausted: everything from here on is an addition
                    parent = None
                elif inherited == func:
                    index += 1
                    continue

            if parent is not None and not announced_override:
                announced_override = True
                lines.append(f"    // @override {self.hierarchy.class_name_of(parent)} : (vtbl={vtable:08X})")
            if parent is None and not announced_add:
                announced_add = True
                if index > 0:
                    lines.append("    // @add")

            lines.append(self._declaration(index, func, parent is not None))
            index += 1
        return lines

    def _declaration(self, index: int, func: int, override: bool) -> str:
        ret, params, body = UNKNOWN_RETURN, UNKNOWN_PARAMS, ""
        if func == self.pure_call:
            body = PURE_BODY
        else:
            decompiled = self.decompiler.decompile(func)
            if decompiled is not None:
                ret, params, body = decompiled.return_type, decompiled.params, decompiled.body
        return format_declaration(index, func, ret, params, body, override)
