"""Micro-Decompiler for trivial x64 leaf functions.

Recognizes functions of the form

    <one of a fixed set of instructions>
    ret | ret imm16

and renders a pseudo C declaration for them. Anything else is left
unclassified: a function is either fully matched or not matched at all.

References:
    https://www.felixcloutier.com/x86/ret
    https://www.felixcloutier.com/x86/mov
    https://www.felixcloutier.com/x86/lea
"""
from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from .address_space import AddressFault, SegmentAddressSpace
from .demangler import NameDemangler
from .structures import COL_SIG_REV1, RttiReader

# Bytes fetched per function; enough for the longest idiom plus "ret imm16"
CODE_WINDOW = 16

RET = 0xC3
RET_IMM16 = 0xC2

# Stack bytes popped by "ret imm16" -> parameter list
RET_PARAMS: Dict[int, str] = {
    0: "void",
    4: "UInt32 arg",
    8: "UInt32 arg1, UInt32 arg2",
    12: "UInt32 arg1, UInt32 arg2, UInt32 arg3",
    16: "UInt32 arg1, UInt32 arg2, UInt32 arg3, UInt32 arg4",
}


@dataclass
class DecompiledFunction:
    """Pseudo declaration of a recognized function."""
    return_type: str
    params: str
    body: str


# (decompiler, function address, operand bytes) -> (return type, body)
Renderer = Callable[["MicroDecompiler", int, bytes], Tuple[str, str]]


@dataclass(frozen=True)
class Idiom:
    """One recognized first instruction."""
    mnemonic: str
    prefix: bytes
    size: int
    render: Renderer


def _hex32(value: int) -> str:
    """Uppercase hex of a value as a 32-bit two's-complement integer."""
    return f"{value & 0xFFFFFFFF:X}"


def _signed(operand: bytes) -> int:
    return int.from_bytes(operand, 'little', signed=True)


def _constant(return_type: str, body: str) -> Renderer:
    return lambda dc, address, operand: (return_type, body)


def _byte_immediate(dc: "MicroDecompiler", address: int, operand: bytes) -> Tuple[str, str]:
    value = operand[0]
    if value == 0:
        return "bool", "{ return false; }"
    if value == 1:
        return "bool", "{ return true; }"
    return "UInt8", f"{{ return 0x{value:02X}; }}"


def _field_load(return_type: str) -> Renderer:
    def render(dc: "MicroDecompiler", address: int, operand: bytes) -> Tuple[str, str]:
        return return_type, f"{{ return ({return_type})unk{_hex32(_signed(operand))}; }}"
    return render


def _field_address(dc: "MicroDecompiler", address: int, operand: bytes) -> Tuple[str, str]:
    return "void *", f"{{ return &unk{_hex32(_signed(operand))}; }}"


def _pointer(dc: "MicroDecompiler", pointer: int) -> Tuple[str, str]:
    type_name = dc.pointee_type(pointer)
    if type_name:
        ret = f"{type_name} *"
        return ret, f"{{ return ({ret})0x{pointer:08X}; }}"
    return "UInt32", f"{{ return 0x{pointer:08X}; }}"


def _pointer_immediate(dc: "MicroDecompiler", address: int, operand: bytes) -> Tuple[str, str]:
    return _pointer(dc, struct.unpack('<I', operand)[0])


def _rip_relative(dc: "MicroDecompiler", address: int, operand: bytes) -> Tuple[str, str]:
    # disp32 is relative to the end of the 7-byte instruction
    return _pointer(dc, address + 7 + _signed(operand))


# Ordered: the first matching prefix wins
IDIOMS: List[Idiom] = [
    # XOR / OR
    Idiom("xor al, al", b"\x32\xC0", 2, _constant("bool", "{ return false; }")),
    Idiom("xor eax, eax", b"\x33\xC0", 2, _constant("UInt32", "{ return 0; }")),
    Idiom("or eax, -1", b"\x83\xC8\xFF", 3, _constant("SInt32", "{ return -1; }")),
    # XORPS
    Idiom("xorps xmm0, xmm0", b"\x0F\x57\xC0", 3, _constant("float", "{ return 0.0f; }")),
    # MOV
    Idiom("mov al, imm8", b"\xB0", 2, _byte_immediate),
    Idiom("mov al, [rcx+disp8]", b"\x8A\x41", 3, _field_load("UInt8")),
    Idiom("mov al, [rcx+disp32]", b"\x8A\x81", 6, _field_load("UInt8")),
    Idiom("mov rax, rcx", b"\x48\x8B\xC1", 3, _constant("void *", "{ return this; }")),
    Idiom("mov rax, [rcx+disp8]", b"\x48\x8B\x41", 4, _field_load("UInt64")),
    Idiom("mov rax, [rcx+disp32]", b"\x48\x8B\x81", 7, _field_load("UInt64")),
    Idiom("mov eax, imm32", b"\xB8", 5, _pointer_immediate),
    # LEA r64, m (REX.W + 8D /r, reg == rax)
    Idiom("lea rax, [rcx+disp8]", b"\x48\x8D\x41", 4, _field_address),
    Idiom("lea rax, [rcx+disp32]", b"\x48\x8D\x81", 7, _field_address),
    Idiom("lea rax, [rip+disp32]", b"\x48\x8D\x05", 7, _rip_relative),
]


class MicroDecompiler:
    """Pattern-matches function prologues against IDIOMS."""

    def __init__(self, space: SegmentAddressSpace, demangler: Optional[NameDemangler] = None,
                 idioms: Optional[List[Idiom]] = None):
        self.space = space
        self.reader = RttiReader(space)
        self.demangler = demangler or NameDemangler()
        self.idioms = idioms if idioms is not None else IDIOMS

    def match(self, code: bytes) -> Optional[Idiom]:
        for idiom in self.idioms:
            if len(code) >= idiom.size and code.startswith(idiom.prefix):
                return idiom
        return None

    def decompile(self, address: int) -> Optional[DecompiledFunction]:
        """Classify the function at `address`, or return None."""
        code = self.space.read_window(address, CODE_WINDOW, self.space.text)
        if not code:
            return None

        idiom = self.match(code)
        if idiom is not None:
            size = idiom.size
            ret, body = idiom.render(self, address, code[len(idiom.prefix):size])
        else:
            size = 0
            ret, body = None, None

        params = self._return_params(code[size:])
        if params is None:
            return None
        if size == 0:
            ret, body = "void", "{ return; }"
        return DecompiledFunction(ret, params, body)

    @staticmethod
    def _return_params(code: bytes) -> Optional[str]:
        """Parameter list implied by a trailing ret, or None if it is not a ret."""
        if not code:
            return None
        if code[0] == RET:
            return "void"
        if code[0] == RET_IMM16 and len(code) >= 3:
            imm = struct.unpack('<H', code[1:3])[0]
            return RET_PARAMS.get(imm, f"UInt32 * {imm // 4}")
        return None

    def pointee_type(self, pointer: int) -> Optional[str]:
        """Class name when `pointer`, taken as a vtable, has valid RTTI."""
        try:
            col = self.reader.meta_locator(pointer)
            if col.signature != COL_SIG_REV1:
                return None
            td = self.reader.type_descriptor(self.reader.resolve(col.type_descriptor))
        except AddressFault:
            return None
        return self.demangler.demangle(td.name)
