"""
Pipeline module - per-account core, actor and action boundary.
"""

from .account import AccountCore, SignalOutcome
from .actor import AccountActor
from .actions import ActionDispatcher

__all__ = ['AccountCore', 'SignalOutcome', 'AccountActor', 'ActionDispatcher']
