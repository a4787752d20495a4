"""
Configuration System

Manages configuration for DialogKG with a layered approach.

Configuration Priority (highest to lowest):
    1. Programmatic (passed to KGConfig())
    2. Config file (KGConfig.from_file)
    3. Environment variables (DIALOG_KG_* prefix)
    4. Built-in defaults

Modules:
    settings: KGConfig class
"""

from dialog_kg.config.settings import KGConfig

__all__ = ["KGConfig"]
