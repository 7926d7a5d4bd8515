"""
objscope Configuration Management
==================================

Dataclass settings persisted as TOML.

Configuration is split into a ``[global]`` table (logging) and an
``[objscope]`` table (decoder behaviour).  Every key is optional; missing
keys fall back to the dataclass defaults below and unknown keys are
ignored.  A value of the wrong type is rejected with :class:`ValueError`.

The file is looked up in this order:

1. the path passed to :meth:`ScopeConfig.load` / :func:`get_config`;
2. the ``OBJSCOPE_CONFIG`` environment variable;
3. ``config.toml`` in the project root.

Only an explicitly requested file must exist; the default location may
be absent, in which case the defaults apply.

Example ``config.toml``::

    [global]
    log_level = "DEBUG"
    log_file = "objscope.log"
    log_json = true

    [objscope]
    max_file_size = 104857600
    fat_arch = "arm64"
    include_dynamic_symbols = false

References:
    - Wiggins, A. (2011). The Twelve-Factor App. https://12factor.net/
    - TOML v1.0.0 Specification. https://toml.io/en/v1.0.0
"""

from __future__ import annotations

import os
import sys
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Mapping, Optional

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib


_DEFAULT_CONFIG_PATH: Path = Path(__file__).resolve().parent.parent / "config.toml"
_ENV_VAR = "OBJSCOPE_CONFIG"

# Field annotations are strings under postponed evaluation.
_FIELD_TYPES: dict[str, type] = {"int": int, "str": str, "bool": bool}


# ========================== Decoder Settings ===============================


@dataclass(slots=True)
class ObjscopeConfig:
    """Settings for the format decoders.

    Attributes:
        max_file_size: Largest file :func:`objscope.parse_file` will read.
        fat_arch: Preferred slice of a fat Mach-O binary, as a
            :class:`objscope.Machine` value (``"x86_64"``, ``"arm64"``...).
            Empty selects the first slice.
        include_dynamic_symbols: Whether ELF ``.dynsym`` entries are
            reported alongside ``.symtab``.
    """

    max_file_size: int = 268_435_456  # 256 MiB
    fat_arch: str = ""
    include_dynamic_symbols: bool = True


# =========================== Global Settings ===============================


@dataclass(slots=True)
class GlobalConfig:
    """Logging settings shared by every objscope module."""

    log_level: str = "INFO"
    log_file: str = ""  # empty disables file logging
    log_json: bool = False


# =========================== Master Config =================================


@dataclass(slots=True)
class ScopeConfig:
    """Complete objscope configuration.

    Usage:
        >>> config = ScopeConfig.load()                  # default lookup
        >>> config = ScopeConfig.load("custom.toml")     # explicit file
        >>> config.objscope.include_dynamic_symbols
        True
    """

    global_settings: GlobalConfig = field(default_factory=GlobalConfig)
    objscope: ObjscopeConfig = field(default_factory=ObjscopeConfig)

    @classmethod
    def load(cls, path: str | Path | None = None) -> ScopeConfig:
        """Load configuration from TOML.

        Args:
            path: TOML file to read.  When ``None``, ``OBJSCOPE_CONFIG`` is
                consulted, then ``<project_root>/config.toml``.

        Raises:
            FileNotFoundError: If an explicitly requested file does not exist.
            ValueError: If a known key holds a value of the wrong type.
        """
        explicit = path if path is not None else os.environ.get(_ENV_VAR) or None
        config_path = Path(explicit) if explicit is not None else _DEFAULT_CONFIG_PATH

        if not config_path.is_file():
            if explicit is not None:
                raise FileNotFoundError(f"Configuration file not found: {config_path}")
            return cls()

        with open(config_path, "rb") as fh:
            return cls.from_mapping(tomllib.load(fh))

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> ScopeConfig:
        """Build a configuration from already-parsed TOML tables."""
        return cls(
            global_settings=_build_section(GlobalConfig, "global", raw.get("global", {})),
            objscope=_build_section(ObjscopeConfig, "objscope", raw.get("objscope", {})),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _build_section(section_cls: type, table: str, data: Mapping[str, Any]) -> Any:
    """Instantiate *section_cls* from the keys it declares, checking types."""
    values: dict[str, Any] = {}
    for f in fields(section_cls):
        if f.name not in data:
            continue
        value = data[f.name]
        expected = _FIELD_TYPES[f.type]
        # bool is an int subclass; keep the two apart.
        if not isinstance(value, expected) or (expected is int and isinstance(value, bool)):
            raise ValueError(
                f"[{table}] {f.name} must be {expected.__name__}, "
                f"got {type(value).__name__}"
            )
        values[f.name] = value
    return section_cls(**values)


# ========================= Module-level convenience ========================

_cached: Optional[ScopeConfig] = None


def get_config(path: str | Path | None = None) -> ScopeConfig:
    """Return the process-wide configuration.

    The first call (or any call with an explicit *path*) loads it; later
    calls return the cached instance.
    """
    global _cached
    if _cached is None or path is not None:
        _cached = ScopeConfig.load(path)
    return _cached
