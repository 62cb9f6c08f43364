"""Configuration module for loading and managing indexer settings"""
from .lib.load_settings_conf import (
    load_settings_conf,
    validate_settings,
    SettingsError,
    DEFAULTS,
)

__all__ = ['load_settings_conf', 'validate_settings', 'SettingsError', 'DEFAULTS']
