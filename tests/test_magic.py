import struct

import pytest

from builders import build_elf, build_fat, build_macho, build_pe, CPU_TYPE_X86_64
from objscope.core.models import BinaryFormat
from objscope.parsers.magic import MagicIdentifier


@pytest.fixture
def identifier():
    return MagicIdentifier()


@pytest.mark.parametrize(
    "image, expected",
    [
        (build_elf(bits=64).data, BinaryFormat.ELF),
        (build_elf(bits=32, little=False).data, BinaryFormat.ELF),
        (build_macho(bits=64).data, BinaryFormat.MACHO),
        (build_macho(bits=32, little=False).data, BinaryFormat.MACHO),
        (build_fat([(CPU_TYPE_X86_64, build_macho().data)]).data, BinaryFormat.MACHO),
        (build_pe().data, BinaryFormat.PE),
        (build_pe(pe32plus=False).data, BinaryFormat.PE),
    ],
)
def test_identify_format(identifier, image, expected):
    assert identifier.identify_format(image) is expected


@pytest.mark.parametrize(
    "data",
    [
        b"",
        b"\x7fEL",
        b"hello, world",
        # Java class file: same magic as a fat binary, version 52.
        b"\xca\xfe\xba\xbe\x00\x00\x00\x34",
        # DOS executable without a PE header.
        b"MZ" + b"\x00" * 0x40,
    ],
)
def test_identify_format_rejects(identifier, data):
    assert identifier.identify_format(data) is None


def test_pe_signature_offset_past_end(identifier):
    data = bytearray(b"MZ" + b"\x00" * 0x40)
    data[0x3C:0x40] = struct.pack("<I", 0x10000)
    assert identifier.identify_format(bytes(data)) is None


def test_accepts_memoryview(identifier):
    view = memoryview(build_elf().data)
    assert identifier.identify_format(view) is BinaryFormat.ELF


def test_identify_descriptions(identifier):
    assert identifier.identify(b"") == "Empty file"
    assert identifier.identify(b"\x00\x01\x02\x03") == "Unknown binary"
    assert identifier.identify(build_elf().data) == "ELF object"
    assert identifier.identify(build_macho(little=False).data) == "Mach-O 64-bit (big-endian)"
    assert identifier.identify(build_pe().data) == "PE/COFF image"
