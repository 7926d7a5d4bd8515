"""
Magic Number Format Identification
====================================

Identifies which object-file container a buffer holds by examining its
leading bytes.  Only the three formats objscope can decode are
recognised: ELF, Mach-O (thin and fat) and PE.

Identification never raises and never reads past the end of the buffer:
a signature that does not fit in the buffer simply does not match.

References:
    - Gary Kessler's File Signatures Table.
      https://www.garykessler.net/library/file_sigs.html
    - ``file(1)`` command magic database. https://github.com/file/file
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Optional

from objscope.core.models import BinaryFormat


@dataclass(frozen=True, slots=True)
class _Signature:
    """A single magic signature entry.

    Attributes:
        magic: Byte pattern to match.
        offset: Byte offset within the file where *magic* is expected.
        format: Container format the signature identifies.
        description: Human-readable type description.
    """
    magic: bytes
    offset: int
    format: BinaryFormat
    description: str


# ---------------------------------------------------------------------------
# Signature table
# ---------------------------------------------------------------------------

_SIGNATURES: list[_Signature] = [
    _Signature(b"\x7fELF", 0, BinaryFormat.ELF, "ELF object"),
    _Signature(b"\xfe\xed\xfa\xce", 0, BinaryFormat.MACHO, "Mach-O 32-bit (big-endian)"),
    _Signature(b"\xfe\xed\xfa\xcf", 0, BinaryFormat.MACHO, "Mach-O 64-bit (big-endian)"),
    _Signature(b"\xce\xfa\xed\xfe", 0, BinaryFormat.MACHO, "Mach-O 32-bit (little-endian)"),
    _Signature(b"\xcf\xfa\xed\xfe", 0, BinaryFormat.MACHO, "Mach-O 64-bit (little-endian)"),
    _Signature(b"\xca\xfe\xba\xbe", 0, BinaryFormat.MACHO, "Mach-O fat binary"),
    _Signature(b"\xca\xfe\xba\xbf", 0, BinaryFormat.MACHO, "Mach-O fat binary (64-bit offsets)"),
    _Signature(b"\xbe\xba\xfe\xca", 0, BinaryFormat.MACHO, "Mach-O fat binary (reversed)"),
    _Signature(b"\xbf\xba\xfe\xca", 0, BinaryFormat.MACHO, "Mach-O fat binary (reversed, 64-bit offsets)"),
    _Signature(b"MZ", 0, BinaryFormat.PE, "PE/COFF image"),
]

_FAT_MAGICS: frozenset[bytes] = frozenset({
    b"\xca\xfe\xba\xbe", b"\xca\xfe\xba\xbf",
    b"\xbe\xba\xfe\xca", b"\xbf\xba\xfe\xca",
})

# Java class files share 0xCAFEBABE; their version field is never this small.
_MAX_FAT_ARCHS: int = 20

_PE_SIGNATURE: bytes = b"PE\x00\x00"
_PE_LFANEW_OFFSET: int = 0x3C


class MagicIdentifier:
    """Identify object-file formats by magic byte signatures.

    Usage::

        identifier = MagicIdentifier()
        identifier.identify_format(raw_bytes)
        # => BinaryFormat.ELF
    """

    def __init__(self) -> None:
        """Initialise the identifier with the built-in signature table."""
        self._signatures: list[_Signature] = list(_SIGNATURES)

    def identify_format(self, data: bytes | memoryview) -> Optional[BinaryFormat]:
        """Return the container format of *data*, or ``None``.

        Args:
            data: Raw file bytes (any bytes-like object).

        Returns:
            The matching :class:`BinaryFormat`, or ``None`` if no
            signature matches.
        """
        sig = self._match(data)
        return sig.format if sig is not None else None

    def identify(self, data: bytes | memoryview) -> str:
        """Return a human-readable description of *data*'s format."""
        if not len(data):
            return "Empty file"
        sig = self._match(data)
        if sig is None:
            return "Unknown binary"
        return sig.description

    # ------------------------------------------------------------------ #
    #  Private helpers
    # ------------------------------------------------------------------ #

    def _match(self, data: bytes | memoryview) -> Optional[_Signature]:
        data_len = len(data)
        for sig in self._signatures:
            end = sig.offset + len(sig.magic)
            if end > data_len:
                continue
            if bytes(data[sig.offset:end]) != sig.magic:
                continue
            if sig.magic in _FAT_MAGICS and not self._looks_like_fat(data, sig.magic):
                continue
            if sig.format is BinaryFormat.PE and not self._has_pe_signature(data):
                continue
            return sig
        return None

    @staticmethod
    def _looks_like_fat(data: bytes | memoryview, magic: bytes) -> bool:
        """Separate fat Mach-O headers from Java class files."""
        if len(data) < 8:
            return False
        endian = ">" if magic[0] == 0xCA else "<"
        (nfat_arch,) = struct.unpack_from(f"{endian}I", data, 4)
        return nfat_arch < _MAX_FAT_ARCHS

    @staticmethod
    def _has_pe_signature(data: bytes | memoryview) -> bool:
        """Check the ``PE\\0\\0`` signature at the offset stored at 0x3C."""
        if len(data) < _PE_LFANEW_OFFSET + 4:
            return False
        (pe_offset,) = struct.unpack_from("<I", data, _PE_LFANEW_OFFSET)
        if pe_offset + 4 > len(data):
            return False
        return bytes(data[pe_offset:pe_offset + 4]) == _PE_SIGNATURE
