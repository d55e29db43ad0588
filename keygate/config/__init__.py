"""
Configuration for KeyGate
"""

from .database import DatabaseConfig
from .settings import Settings, load_settings

__all__ = ['DatabaseConfig', 'Settings', 'load_settings']
