"""
Utils Package
=============

Logging setup and per-turn correlation for the agent host.
"""

from .logging_config import (
    setup_logging,
    get_logger,
    start_turn,
    clear_turn_ids,
)

__all__ = [
    'setup_logging',
    'get_logger',
    'start_turn',
    'clear_turn_ids',
]
