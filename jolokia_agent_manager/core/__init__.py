#!/usr/bin/env python3
"""
Jolokia Agent Manager - Core Module
"""

from .errors import AgentManagerError, UsageError
from .options import Command, ToolOptions

__all__ = [
    'AgentManagerError',
    'UsageError',
    'Command',
    'ToolOptions'
]
