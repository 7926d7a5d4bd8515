"""
objscope Entry Points
======================

:func:`parse` identifies the container format of a buffer by its magic
number and hands the buffer to the matching decoder.  The decoder set is
closed: a fixed ``BinaryFormat -> decoder`` table, not a plugin registry.

The result is an :class:`ObjectFile`, a single handle that holds exactly
one decoder and forwards every query to it, so callers never branch on
the format themselves::

    obj = objscope.parse(raw)
    for section in obj.sections():
        print(section.name, section.kind.value, len(section.data))

All section, segment and symbol views borrow from the buffer passed in;
nothing is copied.
"""

from __future__ import annotations

from pathlib import Path
from typing import Iterator, Optional, Union

from shared.config import ScopeConfig, get_config
from shared.logger import get_logger

from objscope.core.errors import MalformedHeaderError, UnrecognizedFormatError
from objscope.core.models import BinaryFormat, Machine, Section, Segment, Symbol
from objscope.parsers.elf_parser import ELFParser
from objscope.parsers.macho_parser import MachOParser
from objscope.parsers.magic import MagicIdentifier
from objscope.parsers.pe_parser import PEParser
from objscope.parsers.utils import as_view

logger = get_logger("router")

Decoder = Union[ELFParser, MachOParser, PEParser]

_MAGIC = MagicIdentifier()


class ObjectFile:
    """Format-independent, read-only view of one object file.

    Instances are produced by :func:`parse`; there is no public
    constructor.  Every method forwards to the held decoder.
    """

    __slots__ = ("_decoder",)

    def __init__(self, decoder: Decoder) -> None:
        self._decoder = decoder

    def __repr__(self) -> str:
        return (
            f"ObjectFile(format={self.format.value}, "
            f"machine={self.machine().value})"
        )

    @property
    def format(self) -> BinaryFormat:
        """Container format of the underlying file."""
        return self._decoder.FORMAT

    def machine(self) -> Machine:
        """Target architecture, :attr:`Machine.OTHER` when not recognised."""
        return self._decoder.machine()

    def is_little_endian(self) -> bool:
        return self._decoder.is_little_endian()

    def is_64bit(self) -> bool:
        return self._decoder.is_64bit()

    def segments(self) -> Iterator[Segment]:
        """Lazily yield the file's loadable segments in table order."""
        return self._decoder.segments()

    def sections(self) -> Iterator[Section]:
        """Lazily yield the file's sections in table order."""
        return self._decoder.sections()

    def symbols(self) -> list[Symbol]:
        """Return every symbol the format's symbol table(s) define."""
        return self._decoder.symbols()

    def section_by_name(self, name: str) -> Optional[Section]:
        """Return the first section called *name*, or ``None``."""
        return self._decoder.section_by_name(name)

    def section_data_by_name(self, name: str) -> Optional[memoryview]:
        """Return the contents of the first section called *name*, or ``None``."""
        return self._decoder.section_data_by_name(name)


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------

def _build_elf(view: memoryview, config: ScopeConfig) -> ELFParser:
    return ELFParser(view, include_dynamic_symbols=config.objscope.include_dynamic_symbols)


def _build_macho(view: memoryview, config: ScopeConfig) -> MachOParser:
    fat_arch: Optional[Machine] = None
    if config.objscope.fat_arch:
        try:
            fat_arch = Machine(config.objscope.fat_arch.lower())
        except ValueError:
            logger.warning(
                "Ignoring unknown fat_arch %r; using the first slice",
                config.objscope.fat_arch,
            )
    return MachOParser(view, fat_arch=fat_arch)


def _build_pe(view: memoryview, config: ScopeConfig) -> PEParser:
    return PEParser(view)


_DECODERS = {
    BinaryFormat.ELF: _build_elf,
    BinaryFormat.MACHO: _build_macho,
    BinaryFormat.PE: _build_pe,
}


def parse(data: Union[bytes, bytearray, memoryview], config: Optional[ScopeConfig] = None) -> ObjectFile:
    """Identify *data*'s format and decode it.

    Args:
        data: Complete contents of an object file.  The buffer is borrowed,
            not copied; every view returned by the handle refers into it.
        config: Decoder settings.  The cached project configuration is
            used when omitted.

    Returns:
        An :class:`ObjectFile` wrapping the matching decoder.

    Raises:
        UnrecognizedFormatError: If no supported magic number matches.
        MalformedHeaderError: If the header of the matched format is invalid.
        TruncatedTableError: If a table or range extends past the buffer.
    """
    view = as_view(data)
    fmt = _MAGIC.identify_format(view)
    if fmt is None:
        leading = bytes(view[:8]).hex(" ") or "<empty>"
        raise UnrecognizedFormatError(f"Unrecognized object file format (leading bytes: {leading})")

    logger.debug("Detected %s (%d bytes)", _MAGIC.identify(view), len(view))
    decoder = _DECODERS[fmt](view, config or get_config())
    decoder.parse()
    return ObjectFile(decoder)


def parse_file(path: Union[str, Path], config: Optional[ScopeConfig] = None) -> ObjectFile:
    """Read *path* and :func:`parse` its contents.

    Raises:
        FileNotFoundError: If *path* does not exist.
        MalformedHeaderError: If the file exceeds ``objscope.max_file_size``.
    """
    config = config or get_config()
    file_path = Path(path)
    if not file_path.is_file():
        raise FileNotFoundError(f"Object file not found: {file_path}")

    file_size = file_path.stat().st_size
    max_size = config.objscope.max_file_size
    if file_size > max_size:
        raise MalformedHeaderError(
            f"File too large: {file_size:,} bytes (max: {max_size:,} bytes)"
        )

    with logger.timed(f"parse {file_path.name}"):
        return parse(file_path.read_bytes(), config)
