"""Image layout configuration.

An ImageLayout holds the module-relative offsets that tie the analysis to
one build of the target image: the bounds of .text, .rdata and .data, the
address of type_info's vftable and of the _purecall trampoline.

Sources, lowest to highest precedence:
- class defaults (Skyrim SE 1.6.659, GOG build)
- a JSON profile file
- RTTI_* environment variables (a .env file is loaded by the launcher)
"""
from __future__ import annotations

import json
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional, Union


class LayoutError(ValueError):
    """Raised for unreadable or inconsistent layout settings."""


def parse_int(value: Union[int, str]) -> int:
    """Parse an int or a decimal/0x-prefixed string."""
    if isinstance(value, bool):
        raise LayoutError(f"Not an address: {value!r}")
    if isinstance(value, int):
        return value
    try:
        return int(str(value).strip(), 0)
    except ValueError:
        raise LayoutError(f"Not an address: {value!r}") from None


@dataclass(frozen=True)
class ImageLayout:
    """Module-relative segment bounds and well-known addresses."""
    text_begin: int = 0x00001000
    text_end: int = 0x015FD000
    rdata_begin: int = 0x015FE1F0
    rdata_end: int = 0x01E3D000
    data_begin: int = 0x01E3D000
    data_end: int = 0x0352BFFF
    type_info_vtbl: int = 0x019752C0
    pure_call: int = 0x01471648

    ENV_PREFIX = "RTTI_"

    @classmethod
    def keys(cls):
        return [f.name for f in fields(cls)]

    @classmethod
    def from_dict(cls, values: Dict[str, Any], base: Optional["ImageLayout"] = None) -> "ImageLayout":
        """Build a layout from a mapping; unknown keys are rejected."""
        unknown = set(values) - set(cls.keys())
        if unknown:
            raise LayoutError(f"Unknown layout keys: {', '.join(sorted(unknown))}")
        parsed = {k: parse_int(v) for k, v in values.items() if v is not None}
        return replace(base or cls(), **parsed)

    @classmethod
    def from_json(cls, path: Union[str, Path], base: Optional["ImageLayout"] = None) -> "ImageLayout":
        """Load a layout profile.

        Expected format: {"text_begin": "0x1000", "text_end": "0x15FD000", ...}
        Missing keys keep their defaults.
        """
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise LayoutError(f"Cannot read layout profile {path}: {e}") from e
        if not isinstance(data, dict):
            raise LayoutError(f"Layout profile {path} must be a JSON object")
        return cls.from_dict(data, base)

    @classmethod
    def from_env(cls, base: Optional["ImageLayout"] = None,
                 environ: Optional[Dict[str, str]] = None) -> "ImageLayout":
        """Override fields from RTTI_TEXT_BEGIN, RTTI_TYPE_INFO_VTBL, ..."""
        environ = os.environ if environ is None else environ
        values = {}
        for key in cls.keys():
            raw = environ.get(cls.ENV_PREFIX + key.upper())
            if raw:
                values[key] = raw
        return cls.from_dict(values, base)

    def validate(self) -> "ImageLayout":
        """Check that every range is non-empty and the ranges do not overlap."""
        ranges = [
            (".text", self.text_begin, self.text_end),
            (".rdata", self.rdata_begin, self.rdata_end),
            (".data", self.data_begin, self.data_end),
        ]
        for name, begin, end in ranges:
            if begin < 0 or end <= begin:
                raise LayoutError(f"Empty or inverted {name} range: 0x{begin:X}-0x{end:X}")
        ordered = sorted(ranges, key=lambda r: r[1])
        for (name_a, _, end_a), (name_b, begin_b, _) in zip(ordered, ordered[1:]):
            if begin_b < end_a:
                raise LayoutError(f"{name_a} overlaps {name_b}")
        return self

    def to_dict(self) -> Dict[str, str]:
        return {key: f"0x{getattr(self, key):X}" for key in self.keys()}


def load_layout(profile: Optional[str] = None, use_env: bool = True) -> ImageLayout:
    """Resolve the effective layout from defaults, a profile and the environment."""
    layout = ImageLayout()
    if profile:
        layout = ImageLayout.from_json(profile, layout)
    if use_env:
        layout = ImageLayout.from_env(layout)
    return layout
