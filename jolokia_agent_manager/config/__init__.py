#!/usr/bin/env python3
"""
Jolokia Agent Manager - Configuration Management Module
"""

from .config_manager import ConfigManager, ConfigValidationError

__all__ = ['ConfigManager', 'ConfigValidationError']
