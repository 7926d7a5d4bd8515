"""Bounds-checked reading helpers shared by the format decoders.

Every decoder reads header and table records through :func:`unpack_at`
and slices file ranges through :func:`slice_range`, so a record or range
that runs past the end of the buffer surfaces as
:class:`~objscope.core.errors.TruncatedTableError` instead of a bare
:class:`struct.error` or a silently short slice.
"""
from __future__ import annotations

import struct
from typing import Any, Optional

from objscope.core.errors import TruncatedTableError


def as_view(data: Any) -> memoryview:
    """Return a flat, read-only byte view over *data* without copying it."""
    view = memoryview(data)
    if view.ndim != 1 or view.format != "B":
        view = view.cast("B")
    return view.toreadonly()


def unpack_at(fmt: str, data: memoryview, offset: int, what: str) -> tuple[Any, ...]:
    """Unpack *fmt* at *offset*, raising if the record is truncated.

    Args:
        fmt: :mod:`struct` format string including its byte-order prefix.
        data: Buffer view.
        offset: Start of the record.
        what: Record description used in the error message.
    """
    size = struct.calcsize(fmt)
    if offset < 0 or offset + size > len(data):
        raise TruncatedTableError(
            f"{what} ({size} bytes) extends past end of buffer "
            f"({len(data)} bytes)",
            offset=offset,
        )
    return struct.unpack_from(fmt, data, offset)


def check_range(
    data: memoryview, offset: int, size: int, what: str, *, end: Optional[int] = None,
) -> None:
    """Raise unless ``[offset, offset + size)`` lies inside *data*.

    Args:
        end: Exclusive upper bound tighter than the buffer, such as the
            end of the selected fat Mach-O slice.

    An empty range borrows nothing and is accepted at any offset; loaders
    leave ``SHT_NOBITS`` and zerofill offsets pointing anywhere.
    """
    limit = len(data) if end is None else min(end, len(data))
    if size == 0 and offset >= 0:
        return
    if offset < 0 or size < 0 or offset + size > limit:
        bound = (
            f"buffer of {len(data)} bytes" if limit == len(data)
            else f"bound 0x{limit:x}"
        )
        raise TruncatedTableError(
            f"{what} range 0x{offset:x}+0x{size:x} exceeds {bound}",
            offset=offset,
        )


def borrow_range(data: memoryview, offset: int, size: int) -> memoryview:
    """Return ``data[offset:offset + size]``; an empty range yields ``data[0:0]``."""
    if size == 0:
        return data[0:0]
    return data[offset:offset + size]


def slice_range(
    data: memoryview, offset: int, size: int, what: str, *, end: Optional[int] = None,
) -> memoryview:
    """Return the borrowed slice ``data[offset:offset + size]`` after checking it."""
    check_range(data, offset, size, what, end=end)
    return borrow_range(data, offset, size)


def read_cstring(table: bytes, offset: int) -> Optional[str]:
    """Read a NUL-terminated string from a string table.

    Returns:
        The decoded string, or ``None`` if *offset* is outside the table.
    """
    if offset < 0 or offset >= len(table):
        return None
    end = table.find(b"\x00", offset)
    if end == -1:
        end = len(table)
    return table[offset:end].decode("utf-8", errors="replace")


def fixed_name(raw: bytes) -> str:
    """Decode a fixed-width, NUL-padded name field (Mach-O, PE)."""
    return raw.split(b"\x00", 1)[0].decode("utf-8", errors="replace")
