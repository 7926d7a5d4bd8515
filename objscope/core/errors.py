"""Exception hierarchy raised while decoding an object file."""

from __future__ import annotations

from typing import Optional


class DecodeError(ValueError):
    """Base class for every objscope decoding failure.

    Attributes:
        offset: Buffer offset at which the problem was detected, if known.
    """

    def __init__(self, message: str, *, offset: Optional[int] = None) -> None:
        self.offset = offset
        if offset is not None:
            message = f"{message} (at offset 0x{offset:x})"
        super().__init__(message)


class UnrecognizedFormatError(DecodeError):
    """No known magic number matched the start of the buffer."""


class MalformedHeaderError(DecodeError):
    """The format matched but its header fields are invalid or inconsistent."""


class TruncatedTableError(DecodeError):
    """A header, table or file range extends past the end of the buffer."""
