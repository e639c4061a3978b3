"""
Utility functions for the Motion Coach project.
"""

from .io_utils import (
    set_global_seed,
    load_config,
    save_session_report,
)

__all__ = [
    'set_global_seed',
    'load_config',
    'save_session_report',
]
