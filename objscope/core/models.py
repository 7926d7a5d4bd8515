"""
objscope Data Models
=====================

Pydantic-based view types shared by every format decoder.  A decoder
never exposes its own header records; it yields these models instead, so
callers see one vocabulary for ELF, Mach-O and PE alike.

All models are frozen.  The ``data`` field of a :class:`Segment` or
:class:`Section` is a read-only :class:`memoryview` slice of the buffer
that was handed to :func:`objscope.parse`: it borrows, it never copies,
and it keeps that buffer alive for as long as the view exists.

References:
    - TIS Committee. (1995). Executable and Linkable Format (ELF) Specification.
    - Apple. (2009). OS X ABI Mach-O File Format Reference.
    - Microsoft. (2024). PE Format. Microsoft Learn.
"""

from __future__ import annotations

import enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class BinaryFormat(str, enum.Enum):
    """Container formats understood by the decoders."""
    ELF = "elf"
    MACHO = "macho"
    PE = "pe"


class Machine(str, enum.Enum):
    """Target architecture of an object file.

    Architectures outside this set are reported as :attr:`OTHER`;
    ``UNKNOWN`` is an alias for the same member.
    """
    OTHER = "other"
    UNKNOWN = "other"
    ARM = "arm"
    ARM64 = "arm64"
    X86 = "x86"
    X86_64 = "x86_64"


class SectionKind(str, enum.Enum):
    """Format-independent classification of a section's contents."""
    UNKNOWN = "unknown"
    TEXT = "text"
    DATA = "data"
    READ_ONLY_DATA = "read_only_data"
    UNINITIALIZED_DATA = "uninitialized_data"
    OTHER = "other"


class SymbolKind(str, enum.Enum):
    """Format-independent classification of a symbol."""
    UNKNOWN = "unknown"
    TEXT = "text"
    DATA = "data"
    SECTION = "section"
    FILE = "file"
    COMMON = "common"
    TLS = "tls"


# ---------------------------------------------------------------------------
# Borrowed views
# ---------------------------------------------------------------------------

_VIEW_CONFIG = ConfigDict(frozen=True, arbitrary_types_allowed=True)


class Segment(BaseModel):
    """A loadable region of the file.

    ``size`` is the size in memory; ``file_size`` is how much of it is
    backed by the file.  ``data`` holds exactly ``file_size`` bytes and is
    never zero-extended, so ``len(data)`` may be smaller than ``size``.

    Attributes:
        name: Segment name (Mach-O segments, PE sections), else ``None``.
        address: Virtual address (an RVA for PE).
        size: Virtual size in bytes.
        file_offset: Offset of the file-backed bytes in the buffer.
        file_size: Number of file-backed bytes.
        data: Borrowed slice of the input buffer.
    """
    model_config = _VIEW_CONFIG

    name: Optional[str] = None
    address: int = 0
    size: int = 0
    file_offset: int = 0
    file_size: int = 0
    data: memoryview = Field(repr=False)


class Section(BaseModel):
    """A named subdivision of the file.

    Attributes:
        index: Position in the format's section table.
        name: Section name, or ``None`` when it could not be resolved.
        segment_name: Enclosing segment (Mach-O only).
        address: Virtual address (an RVA for PE).
        size: Size in memory.
        file_offset: Offset of the section contents in the buffer.
        file_size: Number of bytes stored in the file.
        kind: Classification derived from the format's flag bits.
        data: Borrowed slice of the input buffer (``file_size`` bytes).
    """
    model_config = _VIEW_CONFIG

    index: int = 0
    name: Optional[str] = None
    segment_name: Optional[str] = None
    address: int = 0
    size: int = 0
    file_offset: int = 0
    file_size: int = 0
    kind: SectionKind = SectionKind.UNKNOWN
    data: memoryview = Field(repr=False)


class Symbol(BaseModel):
    """One symbol table entry.

    Attributes:
        kind: What the symbol names.
        name: Symbol name, or ``None`` when absent or unresolvable.
        address: Symbol address; zero when unknown.
        size: Symbol size; zero when unknown.
        is_global: ``True`` for global and weak bindings.
        section_index: Index of the defining section in the format's table.
        section_kind: Kind of the defining section, ``None`` if undefined.
    """
    model_config = ConfigDict(frozen=True)

    kind: SymbolKind = SymbolKind.UNKNOWN
    name: Optional[str] = None
    address: int = 0
    size: int = 0
    is_global: bool = False
    section_index: Optional[int] = None
    section_kind: Optional[SectionKind] = None

    @property
    def is_local(self) -> bool:
        return not self.is_global

    @property
    def is_undefined(self) -> bool:
        """True when the symbol has no defining section."""
        return self.section_kind is None
