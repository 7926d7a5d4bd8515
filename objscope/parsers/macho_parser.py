"""
Mach-O Object Format Decoder
==============================

Manual struct-based decoder for the Mach-O format used by macOS, iOS and
the other Darwin platforms.

Thin images are supported as 32-bit and 64-bit variants in either byte
order; every header and table field is read in the order declared by the
magic number.  Fat (universal) binaries are unwrapped by selecting one
architecture slice: all offsets inside a slice are relative to the slice
start, and every view still borrows from the complete input buffer.

The decoder extracts:
    - Mach header (cputype, byte order, word size)
    - ``LC_SEGMENT`` / ``LC_SEGMENT_64`` load commands as segments, and
      their nested section records as sections
    - The ``LC_SYMTAB`` ``nlist`` symbol table and its string table

Other load commands are skipped.

References:
    - Apple. (2009). OS X ABI Mach-O File Format Reference.
    - ``<mach-o/loader.h>``, ``<mach-o/nlist.h>``, ``<mach-o/fat.h>``
      from the cctools / xnu sources.
"""

from __future__ import annotations

from typing import Iterator, Optional

from objscope.core.errors import MalformedHeaderError
from objscope.core.models import (
    BinaryFormat,
    Machine,
    Section,
    SectionKind,
    Segment,
    Symbol,
    SymbolKind,
)
from objscope.parsers.utils import (
    borrow_range,
    check_range,
    fixed_name,
    read_cstring,
    slice_range,
    unpack_at,
)
from shared.logger import get_logger

logger = get_logger("macho")


# ---------------------------------------------------------------------------
# Mach-O Constants
# ---------------------------------------------------------------------------

MH_MAGIC: int = 0xFEEDFACE
MH_CIGAM: int = 0xCEFAEDFE
MH_MAGIC_64: int = 0xFEEDFACF
MH_CIGAM_64: int = 0xCFFAEDFE

FAT_MAGIC: int = 0xCAFEBABE
FAT_CIGAM: int = 0xBEBAFECA
FAT_MAGIC_64: int = 0xCAFEBABF
FAT_CIGAM_64: int = 0xBFBAFECA

# CPU types
CPU_ARCH_ABI64: int = 0x01000000
CPU_ARCH_ABI64_32: int = 0x02000000
CPU_TYPE_X86: int = 7
CPU_TYPE_X86_64: int = CPU_TYPE_X86 | CPU_ARCH_ABI64
CPU_TYPE_ARM: int = 12
CPU_TYPE_ARM64: int = CPU_TYPE_ARM | CPU_ARCH_ABI64
CPU_TYPE_ARM64_32: int = CPU_TYPE_ARM | CPU_ARCH_ABI64_32

_CPU_MACHINES: dict[int, Machine] = {
    CPU_TYPE_X86: Machine.X86,
    CPU_TYPE_X86_64: Machine.X86_64,
    CPU_TYPE_ARM: Machine.ARM,
    CPU_TYPE_ARM64: Machine.ARM64,
    CPU_TYPE_ARM64_32: Machine.ARM64,
}

# Load commands
LC_SEGMENT: int = 0x1
LC_SYMTAB: int = 0x2
LC_SEGMENT_64: int = 0x19

# Section types (low byte of the flags field)
SECTION_TYPE: int = 0x000000FF
S_REGULAR: int = 0x0
S_ZEROFILL: int = 0x1
S_CSTRING_LITERALS: int = 0x2
S_4BYTE_LITERALS: int = 0x3
S_8BYTE_LITERALS: int = 0x4
S_LITERAL_POINTERS: int = 0x5
S_NON_LAZY_SYMBOL_POINTERS: int = 0x6
S_LAZY_SYMBOL_POINTERS: int = 0x7
S_SYMBOL_STUBS: int = 0x8
S_MOD_INIT_FUNC_POINTERS: int = 0x9
S_MOD_TERM_FUNC_POINTERS: int = 0xA
S_COALESCED: int = 0xB
S_GB_ZEROFILL: int = 0xC
S_INTERPOSING: int = 0xD
S_16BYTE_LITERALS: int = 0xE
S_DTRACE_DOF: int = 0xF
S_LAZY_DYLIB_SYMBOL_POINTERS: int = 0x10
S_THREAD_LOCAL_REGULAR: int = 0x11
S_THREAD_LOCAL_ZEROFILL: int = 0x12
S_THREAD_LOCAL_VARIABLES: int = 0x13
S_THREAD_LOCAL_VARIABLE_POINTERS: int = 0x14
S_THREAD_LOCAL_INIT_FUNCTION_POINTERS: int = 0x15

# Section attributes
S_ATTR_PURE_INSTRUCTIONS: int = 0x80000000
S_ATTR_DEBUG: int = 0x02000000
S_ATTR_SOME_INSTRUCTIONS: int = 0x00000400

_ZEROFILL_TYPES: frozenset[int] = frozenset({
    S_ZEROFILL, S_GB_ZEROFILL, S_THREAD_LOCAL_ZEROFILL,
})

_LITERAL_TYPES: frozenset[int] = frozenset({
    S_CSTRING_LITERALS, S_4BYTE_LITERALS, S_8BYTE_LITERALS,
    S_16BYTE_LITERALS, S_LITERAL_POINTERS,
})

_DATA_TYPES: frozenset[int] = frozenset({
    S_REGULAR, S_NON_LAZY_SYMBOL_POINTERS, S_LAZY_SYMBOL_POINTERS,
    S_MOD_INIT_FUNC_POINTERS, S_MOD_TERM_FUNC_POINTERS,
    S_LAZY_DYLIB_SYMBOL_POINTERS, S_THREAD_LOCAL_REGULAR,
    S_THREAD_LOCAL_VARIABLES, S_THREAD_LOCAL_VARIABLE_POINTERS,
    S_THREAD_LOCAL_INIT_FUNCTION_POINTERS,
})

_TLS_TYPES: frozenset[int] = frozenset({
    S_THREAD_LOCAL_REGULAR, S_THREAD_LOCAL_ZEROFILL, S_THREAD_LOCAL_VARIABLES,
})

# nlist n_type masks and values
N_STAB: int = 0xE0
N_PEXT: int = 0x10
N_TYPE: int = 0x0E
N_EXT: int = 0x01
N_UNDF: int = 0x0
N_SECT: int = 0xE

# Record layouts (without byte-order prefix)
_MACH_HEADER: str = "IiiIIII"           # 28 bytes
_MACH_HEADER_64: str = "IiiIIIII"       # 32 bytes
_LOAD_COMMAND: str = "II"
_SEGMENT: str = "II16sIIIIiiII"         # 56 bytes
_SEGMENT_64: str = "II16sQQQQiiII"      # 72 bytes
_SECTION: str = "16s16sIIIIIIIII"       # 68 bytes
_SECTION_64: str = "16s16sQQIIIIIIII"   # 80 bytes
_SYMTAB: str = "IIIIII"                 # 24 bytes
_NLIST: str = "IBBHI"                   # 12 bytes
_NLIST_64: str = "IBBHQ"                # 16 bytes
_FAT_HEADER: str = "II"
_FAT_ARCH: str = "iiIII"                # 20 bytes
_FAT_ARCH_64: str = "iiQQII"            # 32 bytes


def classify_section(flags: int, segment_name: str) -> SectionKind:
    """Map a Mach-O section's flags onto a :class:`SectionKind`.

    Rules are applied in order; the first match wins:

    1. Zero-fill types are uninitialised data.
    2. Debug sections are unknown.
    3. Sections carrying instructions are text.
    4. Literal pools are read-only data.
    5. Regular sections of ``__TEXT`` are read-only data.
    6. Regular, pointer-table and thread-local sections are data.
    7. Anything else is other.
    """
    section_type = flags & SECTION_TYPE
    if section_type in _ZEROFILL_TYPES:
        return SectionKind.UNINITIALIZED_DATA
    if flags & S_ATTR_DEBUG:
        return SectionKind.UNKNOWN
    if flags & (S_ATTR_PURE_INSTRUCTIONS | S_ATTR_SOME_INSTRUCTIONS):
        return SectionKind.TEXT
    if section_type in _LITERAL_TYPES:
        return SectionKind.READ_ONLY_DATA
    if section_type == S_REGULAR and segment_name == "__TEXT":
        return SectionKind.READ_ONLY_DATA
    if section_type in _DATA_TYPES:
        return SectionKind.DATA
    return SectionKind.OTHER


# ---------------------------------------------------------------------------
# Internal parsed structures
# ---------------------------------------------------------------------------

class _MachHeader:
    """Parsed mach_header / mach_header_64 fields."""
    __slots__ = (
        "magic", "cputype", "cpusubtype", "filetype",
        "ncmds", "sizeofcmds", "flags",
    )

    def __init__(self) -> None:
        self.magic: int = 0
        self.cputype: int = 0
        self.cpusubtype: int = 0
        self.filetype: int = 0
        self.ncmds: int = 0
        self.sizeofcmds: int = 0
        self.flags: int = 0


class _FatArch:
    """One architecture slice of a fat binary."""
    __slots__ = ("cputype", "cpusubtype", "offset", "size", "align")

    def __init__(self) -> None:
        self.cputype: int = 0
        self.cpusubtype: int = 0
        self.offset: int = 0
        self.size: int = 0
        self.align: int = 0


class _MachSegment:
    """Parsed segment_command / segment_command_64."""
    __slots__ = ("segname", "vmaddr", "vmsize", "fileoff", "filesize", "nsects")

    def __init__(self) -> None:
        self.segname: str = ""
        self.vmaddr: int = 0
        self.vmsize: int = 0
        self.fileoff: int = 0
        self.filesize: int = 0
        self.nsects: int = 0


class _MachSection:
    """Parsed section / section_64 record."""
    __slots__ = ("sectname", "segname", "addr", "size", "offset", "flags")

    def __init__(self) -> None:
        self.sectname: str = ""
        self.segname: str = ""
        self.addr: int = 0
        self.size: int = 0
        self.offset: int = 0
        self.flags: int = 0

    @property
    def file_size(self) -> int:
        if self.flags & SECTION_TYPE in _ZEROFILL_TYPES:
            return 0
        return self.size


class _SymtabCommand:
    """Parsed symtab_command."""
    __slots__ = ("symoff", "nsyms", "stroff", "strsize")

    def __init__(self) -> None:
        self.symoff: int = 0
        self.nsyms: int = 0
        self.stroff: int = 0
        self.strsize: int = 0


# ---------------------------------------------------------------------------
# Mach-O Parser
# ---------------------------------------------------------------------------

class MachOParser:
    """Manual struct-based Mach-O decoder.

    Usage::

        parser = MachOParser(view, fat_arch=Machine.ARM64)
        parser.parse()                  # raises DecodeError on bad input
        for section in parser.sections():
            print(section.segment_name, section.name, section.kind)
    """

    FORMAT = BinaryFormat.MACHO

    def __init__(self, data: memoryview, *, fat_arch: Optional[Machine] = None) -> None:
        """Initialise the parser over a read-only buffer view.

        Args:
            data: Complete Mach-O (thin or fat) file contents.
            fat_arch: Architecture slice to decode from a fat binary.
                The first slice is used when ``None`` or not present.
        """
        self._data: memoryview = data
        self._fat_arch = fat_arch
        self._base: int = 0
        self._end: int = len(data)
        self._header: _MachHeader = _MachHeader()
        self._segments: list[_MachSegment] = []
        self._sections: list[_MachSection] = []
        self._symtab: Optional[_SymtabCommand] = None
        self._endian: str = "<"
        self._is_64bit: bool = False

    # ------------------------------------------------------------------ #
    #  Parsing
    # ------------------------------------------------------------------ #

    def parse(self) -> None:
        """Decode and validate the Mach header and load commands.

        Raises:
            MalformedHeaderError: On an invalid magic, fat header or load command.
            TruncatedTableError: If a table or file range extends past the buffer.
        """
        with logger.operation("parse"):
            (magic,) = unpack_at(">I", self._data, 0, "Mach-O magic")
            if magic in (FAT_MAGIC, FAT_CIGAM, FAT_MAGIC_64, FAT_CIGAM_64):
                self._base, self._end = self._select_fat_slice(magic)
            self._parse_mach_header()
            self._parse_load_commands()
            logger.debug(
                "Mach-O %d-bit %s at 0x%x: %d segments, %d sections, %s",
                64 if self._is_64bit else 32,
                "LE" if self._endian == "<" else "BE",
                self._base,
                len(self._segments),
                len(self._sections),
                "symtab" if self._symtab is not None else "no symtab",
            )

    def _select_fat_slice(self, magic: int) -> tuple[int, int]:
        """Parse the fat header and return the chosen slice's ``(start, end)``."""
        endian = ">" if magic in (FAT_MAGIC, FAT_MAGIC_64) else "<"
        is_fat64 = magic in (FAT_MAGIC_64, FAT_CIGAM_64)
        _, nfat_arch = unpack_at(endian + _FAT_HEADER, self._data, 0, "Fat header")
        if nfat_arch == 0:
            raise MalformedHeaderError("Fat binary has no architectures")

        layout = endian + (_FAT_ARCH_64 if is_fat64 else _FAT_ARCH)
        entry_size = 32 if is_fat64 else 20
        check_range(self._data, 8, nfat_arch * entry_size, "Fat architecture table")

        archs: list[_FatArch] = []
        for i in range(nfat_arch):
            arch = _FatArch()
            fields = unpack_at(layout, self._data, 8 + i * entry_size, "Fat architecture")
            arch.cputype, arch.cpusubtype, arch.offset, arch.size, arch.align = fields[:5]
            check_range(self._data, arch.offset, arch.size, f"Fat slice {i}")
            archs.append(arch)

        chosen = archs[0]
        if self._fat_arch is not None:
            for arch in archs:
                if _CPU_MACHINES.get(arch.cputype, Machine.OTHER) is self._fat_arch:
                    chosen = arch
                    break
            else:
                logger.debug("No %s slice in fat binary, using the first",
                             self._fat_arch.value)
        return chosen.offset, chosen.offset + chosen.size

    def _parse_mach_header(self) -> None:
        """Parse the thin Mach header at the slice base."""
        (raw_magic,) = unpack_at("<I", self._data, self._base, "Mach header")
        if raw_magic in (MH_MAGIC, MH_MAGIC_64):
            self._endian = "<"
        elif raw_magic in (MH_CIGAM, MH_CIGAM_64):
            self._endian = ">"
        else:
            raise MalformedHeaderError(
                f"Invalid Mach-O magic 0x{raw_magic:08x}", offset=self._base
            )
        self._is_64bit = raw_magic in (MH_MAGIC_64, MH_CIGAM_64)

        layout = _MACH_HEADER_64 if self._is_64bit else _MACH_HEADER
        check_range(self._data, self._base, 32 if self._is_64bit else 28, "Mach header",
                    end=self._end)
        fields = unpack_at(self._endian + layout, self._data, self._base, "Mach header")
        h = self._header
        (
            h.magic, h.cputype, h.cpusubtype, h.filetype,
            h.ncmds, h.sizeofcmds, h.flags,
        ) = fields[:7]

    def _parse_load_commands(self) -> None:
        """Walk the load commands, keeping segments and the symbol table."""
        h = self._header
        start = self._base + (32 if self._is_64bit else 28)
        end = start + h.sizeofcmds
        check_range(self._data, start, h.sizeofcmds, "Load command area", end=self._end)

        offset = start
        for i in range(h.ncmds):
            if offset + 8 > end:
                raise MalformedHeaderError(
                    f"Load command {i} starts beyond sizeofcmds", offset=offset
                )
            cmd, cmdsize = unpack_at(self._endian + _LOAD_COMMAND, self._data, offset, "Load command")
            if cmdsize < 8 or offset + cmdsize > end:
                raise MalformedHeaderError(
                    f"Load command {i} has invalid size {cmdsize}", offset=offset
                )

            if cmd == LC_SEGMENT or cmd == LC_SEGMENT_64:
                self._parse_segment(offset, cmdsize, is_64=cmd == LC_SEGMENT_64)
            elif cmd == LC_SYMTAB:
                self._parse_symtab(offset, cmdsize)
            offset += cmdsize

    def _parse_segment(self, offset: int, cmdsize: int, *, is_64: bool) -> None:
        seg = _MachSegment()
        layout = self._endian + (_SEGMENT_64 if is_64 else _SEGMENT)
        seg_size = 72 if is_64 else 56
        sect_layout = self._endian + (_SECTION_64 if is_64 else _SECTION)
        sect_size = 80 if is_64 else 68

        (
            _cmd, _cmdsize, raw_name, seg.vmaddr, seg.vmsize,
            seg.fileoff, seg.filesize, _maxprot, _initprot, seg.nsects, _flags,
        ) = unpack_at(layout, self._data, offset, "Segment command")
        seg.segname = fixed_name(raw_name)

        if seg_size + seg.nsects * sect_size > cmdsize:
            raise MalformedHeaderError(
                f"Segment {seg.segname!r} declares {seg.nsects} sections "
                f"that do not fit in its load command",
                offset=offset,
            )
        check_range(self._data, self._base + seg.fileoff, seg.filesize,
                    f"Segment {seg.segname!r}", end=self._end)
        self._segments.append(seg)

        for i in range(seg.nsects):
            sect_offset = offset + seg_size + i * sect_size
            sect = _MachSection()
            fields = unpack_at(sect_layout, self._data, sect_offset, "Section")
            raw_sectname, raw_segname, sect.addr, sect.size, sect.offset = fields[:5]
            sect.flags = fields[8]
            sect.sectname = fixed_name(raw_sectname)
            sect.segname = fixed_name(raw_segname)
            check_range(self._data, self._base + sect.offset, sect.file_size,
                        f"Section {sect.segname},{sect.sectname}", end=self._end)
            self._sections.append(sect)

    def _parse_symtab(self, offset: int, cmdsize: int) -> None:
        if cmdsize < 24:
            raise MalformedHeaderError("LC_SYMTAB command too small", offset=offset)
        st = _SymtabCommand()
        _cmd, _cmdsize, st.symoff, st.nsyms, st.stroff, st.strsize = unpack_at(
            self._endian + _SYMTAB, self._data, offset, "Symtab command"
        )
        nlist_size = 16 if self._is_64bit else 12
        check_range(self._data, self._base + st.symoff, st.nsyms * nlist_size, "Symbol table",
                    end=self._end)
        check_range(self._data, self._base + st.stroff, st.strsize, "String table",
                    end=self._end)
        self._symtab = st

    # ------------------------------------------------------------------ #
    #  Public interface
    # ------------------------------------------------------------------ #

    def machine(self) -> Machine:
        return _CPU_MACHINES.get(self._header.cputype, Machine.OTHER)

    def is_little_endian(self) -> bool:
        return self._endian == "<"

    def is_64bit(self) -> bool:
        return self._is_64bit

    def segments(self) -> Iterator[Segment]:
        """Yield one :class:`Segment` per segment load command."""
        for seg in self._segments:
            start = self._base + seg.fileoff
            yield Segment(
                name=seg.segname,
                address=seg.vmaddr,
                size=seg.vmsize,
                file_offset=start,
                file_size=seg.filesize,
                data=borrow_range(self._data, start, seg.filesize),
            )

    def sections(self) -> Iterator[Section]:
        """Yield every section of every segment, in load-command order."""
        for index, sect in enumerate(self._sections):
            yield self._make_section(index, sect)

    def section_by_name(self, name: str) -> Optional[Section]:
        for index, sect in enumerate(self._sections):
            if sect.sectname == name:
                return self._make_section(index, sect)
        return None

    def section_data_by_name(self, name: str) -> Optional[memoryview]:
        section = self.section_by_name(name)
        return section.data if section is not None else None

    def symbols(self) -> list[Symbol]:
        """Return the non-debug entries of the ``LC_SYMTAB`` table."""
        st = self._symtab
        if st is None:
            return []

        strtab = bytes(slice_range(
            self._data, self._base + st.stroff, st.strsize, "String table", end=self._end,
        ))
        layout = self._endian + (_NLIST_64 if self._is_64bit else _NLIST)
        nlist_size = 16 if self._is_64bit else 12

        result: list[Symbol] = []
        for i in range(st.nsyms):
            n_strx, n_type, n_sect, _n_desc, n_value = unpack_at(
                layout, self._data, self._base + st.symoff + i * nlist_size, "nlist"
            )
            if n_type & N_STAB:
                continue
            result.append(self._make_symbol(strtab, n_strx, n_type, n_sect, n_value))
        return result

    # ------------------------------------------------------------------ #
    #  Utility methods
    # ------------------------------------------------------------------ #

    def _make_symbol(
        self, strtab: bytes, n_strx: int, n_type: int, n_sect: int, n_value: int,
    ) -> Symbol:
        name = read_cstring(strtab, n_strx) or None
        is_global = bool(n_type & N_EXT)
        symbol_type = n_type & N_TYPE

        if symbol_type == N_SECT and 1 <= n_sect <= len(self._sections):
            sect = self._sections[n_sect - 1]
            section_kind = classify_section(sect.flags, sect.segname)
            if sect.flags & SECTION_TYPE in _TLS_TYPES:
                kind = SymbolKind.TLS
            elif section_kind is SectionKind.TEXT:
                kind = SymbolKind.TEXT
            elif section_kind in (
                SectionKind.DATA,
                SectionKind.READ_ONLY_DATA,
                SectionKind.UNINITIALIZED_DATA,
            ):
                kind = SymbolKind.DATA
            else:
                kind = SymbolKind.UNKNOWN
            return Symbol(
                kind=kind,
                name=name,
                address=n_value,
                size=0,
                is_global=is_global,
                section_index=n_sect - 1,
                section_kind=section_kind,
            )

        if symbol_type == N_SECT:
            logger.debug("Symbol %r refers to missing section %d", name, n_sect)

        if symbol_type == N_UNDF and is_global and n_value != 0:
            # Common symbol: n_value holds the size.
            return Symbol(kind=SymbolKind.COMMON, name=name, size=n_value, is_global=True)

        return Symbol(
            kind=SymbolKind.UNKNOWN,
            name=name,
            address=n_value,
            is_global=is_global,
        )

    def _make_section(self, index: int, sect: _MachSection) -> Section:
        start = self._base + sect.offset
        file_size = sect.file_size
        return Section(
            index=index,
            name=sect.sectname,
            segment_name=sect.segname,
            address=sect.addr,
            size=sect.size,
            file_offset=start,
            file_size=file_size,
            kind=classify_section(sect.flags, sect.segname),
            data=borrow_range(self._data, start, file_size),
        )
