"""
objscope -- Object File Reader
===============================

objscope gives linkers, debuggers, symbolizers and binary-inspection
tools one read-only, format-independent view over compiled object files
and executables in the ELF, Mach-O and PE/COFF container formats.

Capabilities:
    - Magic-number-based format identification
    - ELF 32/64-bit in either byte order, with extended section numbering
    - Mach-O 32/64-bit in either byte order, and fat (universal) binaries
    - PE32 and PE32+ images with their COFF symbol tables
    - Uniform segment, section and symbol views borrowing from the input
    - Section and symbol classification into portable kinds

Usage::

    import objscope

    obj = objscope.parse_file("/bin/ls")
    print(obj.format.value, obj.machine().value)
    text = obj.section_data_by_name(".text")

References:
    - TIS Committee. (1995). ELF Specification.
    - Apple. (2009). OS X ABI Mach-O File Format Reference.
    - Microsoft. (2024). PE Format.
"""

from objscope.core.errors import (
    DecodeError,
    MalformedHeaderError,
    TruncatedTableError,
    UnrecognizedFormatError,
)
from objscope.core.models import (
    BinaryFormat,
    Machine,
    Section,
    SectionKind,
    Segment,
    Symbol,
    SymbolKind,
)
from objscope.core.object_file import ObjectFile, parse, parse_file

__version__ = "1.0.0"
__all__ = [
    "parse",
    "parse_file",
    "ObjectFile",
    "BinaryFormat",
    "Machine",
    "Segment",
    "Section",
    "SectionKind",
    "Symbol",
    "SymbolKind",
    "DecodeError",
    "UnrecognizedFormatError",
    "MalformedHeaderError",
    "TruncatedTableError",
]
