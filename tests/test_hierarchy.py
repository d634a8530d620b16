"""Tests for hierarchy reconstruction and parent vtable resolution."""
from rtti_analyzer.demangler import NameDemangler
from rtti_analyzer.hierarchy import NO_RTTI, HierarchyReconstructor
from rtti_analyzer.scanner import VTableScanner


def _reconstructor(builder):
    return HierarchyReconstructor(builder.space(), builder.type_info_vtbl,
                                  NameDemangler(use_system=False))


def _vmap(builder):
    return VTableScanner(builder.space(), builder.type_info_vtbl).discover()


def test_type_hierarchy_of(three_level):
    builder, _, mid, _ = three_level
    info = _reconstructor(builder).type_hierarchy_of(mid.vtable)
    assert info.name == "class Mid"
    assert info.offset == 0
    assert info.hierarchy.num_base_classes == 2


def test_parent_chain(three_level):
    builder, base, mid, derived = three_level
    hr = _reconstructor(builder)
    vmap = _vmap(builder)
    assert hr.parent_vtable_of(derived.vtable, vmap) == mid.vtable
    assert hr.parent_vtable_of(mid.vtable, vmap) == base.vtable
    assert hr.parent_vtable_of(base.vtable, vmap) is None


def test_parent_of_secondary_vtable(builder):
    left = builder.add_class(".?AVLeft@@")
    right = builder.add_class(".?AVRight@@")
    chd = builder.hierarchy([(".?AVMulti@@", 2, 0), (".?AVLeft@@", 0, 0), (".?AVRight@@", 0, 0x10)])
    primary = builder.add_class(".?AVMulti@@", chd=chd, offset=0)
    secondary = builder.add_class(".?AVMulti@@", chd=chd, offset=0x10)

    hr = _reconstructor(builder)
    vmap = _vmap(builder)
    assert vmap.vtables(primary.td) == [primary.vtable, secondary.vtable]
    assert hr.parent_vtable_of(primary.vtable, vmap) == left.vtable
    assert hr.parent_vtable_of(secondary.vtable, vmap) == right.vtable


def test_parent_without_mapped_base_is_none(builder):
    # Parent type is named in the hierarchy but has no vtable of its own
    child = builder.add_class(".?AVChild@@", [".?AVAbstract@@"])
    hr = _reconstructor(builder)
    assert hr.parent_vtable_of(child.vtable, _vmap(builder)) is None


def test_render_hierarchy_indentation(three_level):
    builder, _, _, derived = three_level
    lines = _reconstructor(builder).render_hierarchy(derived.vtable)
    assert lines == [
        f"class Derived +0000 (_vtbl={derived.vtable:08X})",
        "0000: class Derived",
        "0000: |   class Mid",
        "0000: |   |   class Base",
    ]


def test_render_hierarchy_siblings(builder):
    chd = builder.hierarchy([(".?AVMulti@@", 2, 0), (".?AVLeft@@", 0, 0), (".?AVRight@@", 0, 0x10)])
    multi = builder.add_class(".?AVMulti@@", chd=chd, offset=0x10)
    lines = _reconstructor(builder).render_hierarchy(multi.vtable)
    assert lines == [
        f"class Multi +0010 (_vtbl={multi.vtable:08X})",
        "0000: class Multi",
        "0000: |   class Left",
        "0010: |   class Right",
    ]


def test_render_hierarchy_verbose(three_level):
    builder, base, _, _ = three_level
    lines = _reconstructor(builder).render_hierarchy(base.vtable, verbose=True)
    assert lines[1] == f"0000: class Base ... {base.td:08X}"


def test_no_rtti_for_garbage(builder):
    func = builder.func()
    hr = _reconstructor(builder)
    assert hr.render_hierarchy(func) == [NO_RTTI]
    assert hr.class_name_of(func) == NO_RTTI
    assert hr.type_descriptor_of(func) is None
    assert hr.type_hierarchy_of(0) is None


def test_foreign_type(builder):
    # A TypeDescriptor whose vftable is not this image's type_info
    td = builder.type_descriptor(".?AVForeign@@", vftable=0x7FF612340000)
    foreign = builder.add_class(".?AVForeign@@")
    hr = _reconstructor(builder)
    assert foreign.td == td
    assert hr.type_hierarchy_of(foreign.vtable) is None
    assert hr.render_hierarchy(foreign.vtable) == [NO_RTTI]
    assert hr.class_name_of(foreign.vtable) == "class Foreign"


def test_class_name_of(three_level):
    builder, _, _, derived = three_level
    hr = _reconstructor(builder)
    assert hr.class_name_of(derived.vtable) == "class Derived"
    assert hr.type_descriptor_of(derived.vtable) == derived.td
