"""
Utility modules for agentdeck.
"""

from .events import EventEmitter
from .console import console, VerboseLevel
from .safety import best_effort, run_best_effort, call_best_effort

__all__ = [
    "EventEmitter",
    "console",
    "VerboseLevel",
    "best_effort",
    "run_best_effort",
    "call_best_effort",
]
