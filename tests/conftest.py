import pytest

from builders import build_elf, build_macho, build_pe
from shared.config import ObjscopeConfig, ScopeConfig


@pytest.fixture
def elf64():
    return build_elf(bits=64, little=True)


@pytest.fixture
def macho64():
    return build_macho(bits=64, little=True)


@pytest.fixture
def pe64():
    return build_pe(pe32plus=True)


@pytest.fixture
def make_config():
    def _make(**objscope_settings) -> ScopeConfig:
        return ScopeConfig(objscope=ObjscopeConfig(**objscope_settings))

    return _make
