"""Tests for the three-pass vtable discovery scan."""
import random
import struct

from rtti_analyzer.address_space import Segment
from rtti_analyzer.core import RttiAnalyzer
from rtti_analyzer.scanner import VTableMap, VTableScanner


def _scan(builder):
    return VTableScanner(builder.space(), builder.type_info_vtbl).discover()


def test_vtable_map_ordering():
    vmap = VTableMap()
    vmap.add(0x10, 0xB00, 8)
    vmap.add(0x10, 0xA00, 0)
    vmap.add(0x20, 0xC00, 0)
    assert vmap.vtables(0x10) == [0xA00, 0xB00]
    assert vmap.primary_vtable(0x10) == 0xA00
    assert vmap.primary_vtable(0x30) is None
    assert list(vmap) == [0x10, 0x20]
    assert len(vmap) == 2
    assert vmap.vtable_count == 3
    assert 0x20 in vmap


def test_discovers_every_class(builder):
    infos = [builder.add_class(f".?AVClass{i}@@") for i in range(5)]
    vmap = _scan(builder)
    assert len(vmap) == 5
    assert list(vmap) == [info.td for info in infos]
    for info in infos:
        assert vmap.vtables(info.td) == [info.vtable]


def test_primary_vtable_first(builder):
    td = builder.type_descriptor(".?AVMulti@@")
    chd = builder.hierarchy([(".?AVMulti@@", 2, 0), (".?AVLeft@@", 0, 0), (".?AVRight@@", 0, 0x10)])
    # Secondary vtable laid out (and found) before the primary one
    secondary = builder.add_class(".?AVMulti@@", chd=chd, offset=0x10)
    primary = builder.add_class(".?AVMulti@@", chd=chd, offset=0)
    vmap = _scan(builder)
    assert vmap.vtables(td) == [primary.vtable, secondary.vtable]
    assert vmap.primary_vtable(td) == primary.vtable


def test_type_descriptor_without_vtable_is_not_mapped(builder):
    builder.type_info_descriptor()
    info = builder.add_class(".?AVOnly@@")
    vmap = _scan(builder)
    assert list(vmap) == [info.td]


def test_rejects_invalid_locators(builder):
    td = builder.type_descriptor(".?AVBad@@")
    chd = builder.hierarchy([(".?AVBad@@", 0, 0)])
    builder.vtable(builder.locator(td, chd, signature=2), [builder.func()])
    builder.vtable(builder.locator(td, chd, cd_offset=8), [builder.func()])
    assert len(_scan(builder)) == 0


def test_rejects_vtable_not_pointing_to_code(builder):
    td = builder.type_descriptor(".?AVData@@")
    chd = builder.hierarchy([(".?AVData@@", 0, 0)])
    col = builder.locator(td, chd)
    # First slot points into .data instead of .text
    builder.vtable(col, [td])
    assert len(_scan(builder)) == 0


def test_discovery_is_idempotent(three_level):
    builder = three_level[0]
    space = builder.space()
    scanner = VTableScanner(space, builder.type_info_vtbl)
    first = scanner.discover()
    second = scanner.discover()
    assert first == second
    assert first.to_dict() == second.to_dict()
    assert list(first) == list(second)


def test_progress_callback(builder):
    builder.add_class(".?AVA@@")
    builder.add_class(".?AVB@@")
    seen = []
    VTableScanner(builder.space(), builder.type_info_vtbl,
                  lambda msg, cur, total: seen.append((cur, total))).discover()
    assert seen == [(1, 2), (2, 2)]


def test_type_info_address_out_of_range(builder):
    builder.add_class(".?AVA@@")
    assert len(VTableScanner(builder.space(), -1).discover()) == 0
    assert len(VTableScanner(builder.space(), 1 << 64).discover()) == 0


def test_fuzz_never_reads_outside_segments(builder, monkeypatch):
    """Dense random patterns must never produce an out-of-segment read."""
    rng = random.Random(1234)
    layout = builder.layout
    type_info = builder.type_info_vtbl
    data_words = (layout.data_end - layout.data_begin) // 8
    for i in range(data_words):
        value = type_info if rng.random() < 0.3 else rng.getrandbits(64)
        struct.pack_into("<Q", builder.image, layout.data_begin + i * 8, value)

    rdata_words = (layout.rdata_end - layout.rdata_begin) // 4
    interesting = [1, 0, layout.data_begin, layout.data_begin + 8, layout.rdata_begin,
                   layout.rdata_end - 4, 0x40000000]
    for i in range(rdata_words):
        if rng.random() < 0.5:
            value = rng.choice(interesting) + rng.choice([0, 8, 16])
        else:
            value = rng.getrandbits(32)
        struct.pack_into("<I", builder.image, layout.rdata_begin + i * 4, value)

    space = builder.space()
    original_read = Segment.read
    reads = []

    def recording_read(self, address, size):
        data = original_read(self, address, size)
        reads.append((self, address, size))
        return data

    monkeypatch.setattr(Segment, "read", recording_read)

    lines = RttiAnalyzer(space, layout).render()

    assert isinstance(lines, list)
    assert reads
    for seg, address, size in reads:
        assert any(seg is s for s in space.segments)
        assert seg.start <= address and address + size <= seg.end
