import struct

import pytest

import objscope
from builders import (
    IMAGE_FILE_MACHINE_AMD64,
    IMAGE_FILE_MACHINE_ARM64,
    IMAGE_FILE_MACHINE_ARMNT,
    IMAGE_FILE_MACHINE_I386,
    PE_LFANEW,
    build_pe,
)
from objscope import (
    BinaryFormat,
    Machine,
    MalformedHeaderError,
    SectionKind,
    SymbolKind,
    TruncatedTableError,
    UnrecognizedFormatError,
)
from objscope.parsers.pe_parser import PEParser, classify_section
from objscope.parsers.utils import as_view


@pytest.mark.parametrize("pe32plus", [True, False])
def test_header(pe32plus):
    obj = objscope.parse(build_pe(pe32plus=pe32plus).data)
    assert obj.format is BinaryFormat.PE
    assert obj.is_64bit() is pe32plus
    assert obj.is_little_endian()
    assert obj.machine() is (Machine.X86_64 if pe32plus else Machine.X86)


@pytest.mark.parametrize(
    "machine, expected",
    [
        (IMAGE_FILE_MACHINE_I386, Machine.X86),
        (IMAGE_FILE_MACHINE_AMD64, Machine.X86_64),
        (0x1C0, Machine.ARM),
        (0x1C2, Machine.ARM),
        (IMAGE_FILE_MACHINE_ARMNT, Machine.ARM),
        (IMAGE_FILE_MACHINE_ARM64, Machine.ARM64),
        (0x5064, Machine.OTHER),  # RISC-V 64
    ],
)
def test_machine(machine, expected):
    assert objscope.parse(build_pe(machine=machine).data).machine() is expected


def test_section_kinds(pe64):
    sections = list(objscope.parse(pe64.data).sections())
    assert [(s.name, s.kind) for s in sections] == [
        (".text", SectionKind.TEXT),
        (".data", SectionKind.DATA),
        (".bss", SectionKind.UNINITIALIZED_DATA),
        (".debug_long_name", SectionKind.DATA),
    ]


def test_section_contents(pe64):
    obj = objscope.parse(pe64.data)
    text = obj.section_by_name(".text")
    assert text.address == 0x1000
    assert text.size == 0x10
    assert text.file_offset == pe64.offsets[".text"]
    assert bytes(text.data) == b"\xc3" + b"\x90" * 15
    assert bytes(obj.section_data_by_name(".debug_long_name")) == b"dbg\x00"
    assert obj.section_data_by_name(".reloc") is None

    bss = obj.section_by_name(".bss")
    assert bss.size == 0x100
    assert bss.file_size == 0
    assert len(bss.data) == 0


def test_segments_mirror_sections(pe64):
    obj = objscope.parse(pe64.data)
    segments = list(obj.segments())
    sections = list(obj.sections())
    assert [s.name for s in segments] == [s.name for s in sections]
    assert [s.address for s in segments] == [0x1000, 0x2000, 0x3000, 0x4000]
    assert [bytes(s.data) for s in segments] == [bytes(s.data) for s in sections]


def test_symbols(pe64):
    symbols = objscope.parse(pe64.data).symbols()
    # Auxiliary records are not symbols.
    assert [s.name for s in symbols] == [
        ".file", ".text", "main", "counter",
        "a_very_long_symbol_name", "puts", "common", "bad",
    ]
    file_sym, section_sym, main, counter, long_sym, puts, common, bad = symbols

    assert file_sym.kind is SymbolKind.FILE
    assert file_sym.section_kind is None

    assert section_sym.kind is SymbolKind.SECTION
    assert section_sym.address == 0x1000
    assert section_sym.section_kind is SectionKind.TEXT

    assert main.kind is SymbolKind.TEXT
    assert main.is_global
    assert main.address == 0x1010
    assert main.section_index == 0

    assert counter.kind is SymbolKind.DATA
    assert counter.is_local
    assert counter.address == 0x2000
    assert counter.section_kind is SectionKind.DATA

    assert long_sym.kind is SymbolKind.DATA
    assert long_sym.address == 0x2004

    assert puts.is_undefined
    assert puts.section_index is None
    assert puts.is_global

    assert common.kind is SymbolKind.COMMON
    assert common.size == 32
    assert common.address == 0

    assert bad.section_kind is None
    assert bad.section_index is None


def test_no_symbol_table():
    obj = objscope.parse(build_pe(with_symbols=False).data)
    assert obj.symbols() == []
    assert [s.name for s in obj.sections()] == [".text", ".data", ".bss"]


def test_long_section_name_outside_string_table(pe64):
    data = bytearray(pe64.data)
    struct.pack_into("<8s", data, pe64.table_offset + 3 * 40, b"/9999")
    sections = list(objscope.parse(bytes(data)).sections())
    assert sections[3].name is None


def test_bad_optional_header_magic():
    with pytest.raises(MalformedHeaderError):
        objscope.parse(build_pe(optional_magic=0x1234).data)


def test_truncated_section_data(pe64):
    with pytest.raises(TruncatedTableError):
        objscope.parse(pe64.data[:pe64.offsets[".data"] + 2])


def test_truncated_section_table():
    image = build_pe(with_symbols=False)
    with pytest.raises(TruncatedTableError):
        objscope.parse(image.data[:image.table_offset + 50])


def test_missing_pe_signature(pe64):
    data = bytearray(pe64.data)
    data[PE_LFANEW:PE_LFANEW + 4] = b"NE\x00\x00"
    # Not a PE image as far as format detection is concerned...
    with pytest.raises(UnrecognizedFormatError):
        objscope.parse(bytes(data))
    # ...and rejected by the decoder when used directly.
    with pytest.raises(MalformedHeaderError):
        PEParser(as_view(bytes(data))).parse()


@pytest.mark.parametrize(
    "characteristics, expected",
    [
        (0x60000020, SectionKind.TEXT),
        (0x20000000, SectionKind.TEXT),
        (0xC0000040, SectionKind.DATA),
        (0x40000040, SectionKind.DATA),
        (0xC0000080, SectionKind.UNINITIALIZED_DATA),
        (0x42000000, SectionKind.UNKNOWN),
    ],
)
def test_classify_section(characteristics, expected):
    assert classify_section(characteristics) is expected
