import struct

import pytest

import objscope
from builders import (
    EM_386,
    EM_AARCH64,
    EM_ARM,
    EM_X86_64,
    SHF_ALLOC,
    SHF_EXECINSTR,
    SHF_WRITE,
    SHT_DYNSYM,
    SHT_NOBITS,
    SHT_PROGBITS,
    SHT_SYMTAB_SHNDX,
    SHN_XINDEX,
    ElfSection,
    build_elf,
    default_elf_sections,
    elf_symbol,
)
from objscope import (
    BinaryFormat,
    Machine,
    MalformedHeaderError,
    SectionKind,
    SymbolKind,
    TruncatedTableError,
)
from objscope.parsers.elf_parser import ELFParser, classify_section
from objscope.parsers.utils import as_view


@pytest.mark.parametrize("bits", [32, 64])
@pytest.mark.parametrize("little", [True, False])
def test_header(bits, little):
    obj = objscope.parse(build_elf(bits=bits, little=little).data)
    assert obj.format is BinaryFormat.ELF
    assert obj.is_64bit() is (bits == 64)
    assert obj.is_little_endian() is little
    assert obj.machine() is Machine.X86_64


@pytest.mark.parametrize(
    "e_machine, expected",
    [
        (EM_386, Machine.X86),
        (EM_X86_64, Machine.X86_64),
        (EM_ARM, Machine.ARM),
        (EM_AARCH64, Machine.ARM64),
        (243, Machine.OTHER),  # RISC-V
    ],
)
def test_machine(e_machine, expected):
    assert objscope.parse(build_elf(machine=e_machine).data).machine() is expected


@pytest.mark.parametrize("bits", [32, 64])
@pytest.mark.parametrize("little", [True, False])
def test_sections(bits, little):
    obj = objscope.parse(build_elf(bits=bits, little=little).data)
    sections = list(obj.sections())
    assert [s.name for s in sections] == [
        "", ".text", ".rodata", ".data", ".bss",
        ".comment", ".symtab", ".strtab", ".shstrtab",
    ]
    assert [s.kind for s in sections[:6]] == [
        SectionKind.UNKNOWN,
        SectionKind.TEXT,
        SectionKind.READ_ONLY_DATA,
        SectionKind.DATA,
        SectionKind.UNINITIALIZED_DATA,
        SectionKind.UNKNOWN,
    ]
    assert [s.index for s in sections] == list(range(9))
    assert all(s.segment_name is None for s in sections)


def test_section_contents(elf64):
    obj = objscope.parse(elf64.data)
    text = obj.section_by_name(".text")
    assert text.address == 0x1000
    assert text.file_offset == elf64.offsets[".text"]
    assert bytes(text.data) == b"\x90" * 16
    assert bytes(obj.section_data_by_name(".rodata")) == b"hello\x00\x00\x00"
    assert obj.section_data_by_name(".missing") is None
    assert obj.section_by_name(".missing") is None


def test_nobits_section_has_no_file_bytes(elf64):
    bss = objscope.parse(elf64.data).section_by_name(".bss")
    assert bss.size == 0x20
    assert bss.file_size == 0
    assert len(bss.data) == 0


def test_segments(elf64):
    segments = list(objscope.parse(elf64.data).segments())
    # The PT_NOTE header is not a segment.
    assert len(segments) == 2
    text, data = segments
    assert text.name is None
    assert text.address == 0x1000
    assert bytes(text.data) == b"\x90" * 16
    assert data.size == 0x24
    assert data.file_size == 4
    assert len(data.data) == 4


def test_sections_iterate_lazily(elf64):
    sections = objscope.parse(elf64.data).sections()
    assert next(sections).index == 0
    assert next(sections).name == ".text"


@pytest.mark.parametrize("bits", [32, 64])
@pytest.mark.parametrize("little", [True, False])
def test_symbols(bits, little):
    symbols = objscope.parse(build_elf(bits=bits, little=little).data).symbols()
    by_name = {s.name: s for s in symbols}
    assert list(by_name) == ["main", "counter", "puts", "buf", "a.c"]

    main = by_name["main"]
    assert main.kind is SymbolKind.TEXT
    assert main.is_global
    assert main.address == 0x1000
    assert main.size == 16
    assert main.section_index == 1
    assert main.section_kind is SectionKind.TEXT

    counter = by_name["counter"]
    assert counter.kind is SymbolKind.DATA
    assert counter.is_local
    assert counter.section_kind is SectionKind.DATA

    puts = by_name["puts"]
    assert puts.kind is SymbolKind.UNKNOWN
    assert puts.is_undefined
    assert puts.section_kind is None
    assert puts.section_index is None

    assert by_name["buf"].section_kind is SectionKind.UNINITIALIZED_DATA

    source = by_name["a.c"]
    assert source.kind is SymbolKind.FILE
    assert source.section_kind is None


def _with_dynsym() -> bytes:
    sections = default_elf_sections()
    dynsym = elf_symbol(64, True, 0, 0, 0, 0, 0) + elf_symbol(64, True, 1, 0x1000, 16, 0x12, 1)
    sections.append(ElfSection(".dynsym", SHT_DYNSYM, SHF_ALLOC, 0x3000, dynsym, link=7, entsize=24))
    return build_elf(sections=sections).data


def test_dynamic_symbols_included_by_default():
    obj = objscope.parse(_with_dynsym())
    assert [s.name for s in obj.symbols()].count("main") == 2
    assert obj.section_by_name(".dynsym").kind is SectionKind.OTHER


def test_dynamic_symbols_can_be_excluded(make_config):
    obj = objscope.parse(_with_dynsym(), make_config(include_dynamic_symbols=False))
    assert [s.name for s in obj.symbols()].count("main") == 1


def test_extended_section_numbering():
    obj = objscope.parse(build_elf(extended_numbering=True).data)
    names = [s.name for s in obj.sections()]
    assert len(names) == 9
    assert names[-1] == ".shstrtab"
    assert obj.section_data_by_name(".text") is not None


def test_extended_symbol_section_index():
    sections = default_elf_sections()
    # .symtab is section 6; its one symbol names .data (section 3) via SHT_SYMTAB_SHNDX.
    sections[5].data = elf_symbol(64, True, 0, 0, 0, 0, 0) + elf_symbol(
        64, True, 6, 0x2000, 4, 0x11, SHN_XINDEX
    )
    sections.append(ElfSection(".symtab_shndx", SHT_SYMTAB_SHNDX, data=struct.pack("<II", 0, 3), link=6))
    (symbol,) = objscope.parse(build_elf(sections=sections).data).symbols()
    assert symbol.name == "counter"
    assert symbol.section_index == 3
    assert symbol.section_kind is SectionKind.DATA


def test_unresolvable_names_are_soft(elf64):
    data = bytearray(elf64.data)
    # sh_name of section 1 (.text), far outside .shstrtab.
    struct.pack_into("<I", data, elf64.table_offset + 64, 0xFFFF)
    obj = objscope.parse(bytes(data))
    assert list(obj.sections())[1].name is None
    assert obj.section_data_by_name(".text") is None


def test_symbol_section_past_table_is_soft():
    sections = default_elf_sections()
    sections[5].data = elf_symbol(64, True, 0, 0, 0, 0, 0) + elf_symbol(64, True, 1, 0, 0, 0x12, 200)
    (symbol,) = objscope.parse(build_elf(sections=sections).data).symbols()
    assert symbol.section_kind is None
    assert symbol.kind is SymbolKind.TEXT


def test_no_symbol_table():
    sections = [s for s in default_elf_sections() if s.name not in (".symtab", ".strtab")]
    assert objscope.parse(build_elf(sections=sections).data).symbols() == []


def test_truncated_section_table(elf64):
    with pytest.raises(TruncatedTableError):
        objscope.parse(elf64.data[:elf64.table_offset + 10])


def test_section_range_past_end(elf64):
    data = bytearray(elf64.data)
    struct.pack_into("<Q", data, elf64.table_offset + 64 + 24, len(data) + 0x1000)
    with pytest.raises(TruncatedTableError):
        objscope.parse(bytes(data))


def test_nobits_offset_past_end(elf64):
    # objcopy --only-keep-debug leaves NOBITS offsets beyond the file.
    data = bytearray(elf64.data)
    struct.pack_into("<Q", data, elf64.table_offset + 4 * 64 + 24, len(data) + 0x100)
    bss = objscope.parse(bytes(data)).section_by_name(".bss")
    assert bss.file_offset == len(data) + 0x100
    assert bss.file_size == 0
    assert bss.size == 0x20
    assert len(bss.data) == 0


def test_truncated_identification():
    with pytest.raises(TruncatedTableError):
        objscope.parse(b"\x7fELF\x02\x01\x01")


@pytest.mark.parametrize(
    "offset, value",
    [
        (4, 3),   # EI_CLASS
        (5, 0),   # EI_DATA
        (6, 2),   # EI_VERSION
    ],
)
def test_bad_identification(elf64, offset, value):
    data = bytearray(elf64.data)
    data[offset] = value
    with pytest.raises(MalformedHeaderError):
        objscope.parse(bytes(data))


def test_section_name_table_out_of_range(elf64):
    data = bytearray(elf64.data)
    struct.pack_into("<H", data, 62, 50)
    with pytest.raises(MalformedHeaderError):
        objscope.parse(bytes(data))


def test_section_entry_size_too_small(elf64):
    data = bytearray(elf64.data)
    struct.pack_into("<H", data, 58, 16)
    with pytest.raises(MalformedHeaderError):
        objscope.parse(bytes(data))


def test_parser_rejects_non_elf():
    with pytest.raises(MalformedHeaderError):
        ELFParser(as_view(b"\x00" * 64)).parse()


@pytest.mark.parametrize(
    "sh_type, flags, expected",
    [
        (SHT_NOBITS, SHF_ALLOC | SHF_WRITE, SectionKind.UNINITIALIZED_DATA),
        (SHT_NOBITS, 0, SectionKind.UNINITIALIZED_DATA),
        (SHT_PROGBITS, 0, SectionKind.UNKNOWN),
        (SHT_PROGBITS, SHF_ALLOC | SHF_EXECINSTR, SectionKind.TEXT),
        (SHT_PROGBITS, SHF_ALLOC | SHF_WRITE, SectionKind.DATA),
        (SHT_PROGBITS, SHF_ALLOC, SectionKind.READ_ONLY_DATA),
        (14, SHF_ALLOC | SHF_WRITE, SectionKind.DATA),  # SHT_INIT_ARRAY
        (6, SHF_ALLOC | SHF_WRITE, SectionKind.OTHER),  # SHT_DYNAMIC
        (7, SHF_ALLOC, SectionKind.OTHER),              # SHT_NOTE
    ],
)
def test_classify_section(sh_type, flags, expected):
    assert classify_section(sh_type, flags) is expected
