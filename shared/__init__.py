"""
objscope Shared Module
=======================

Configuration management and structured logging shared by the objscope
decoders and router.
"""

from shared.config import ScopeConfig, get_config

__all__ = ["ScopeConfig", "get_config"]
