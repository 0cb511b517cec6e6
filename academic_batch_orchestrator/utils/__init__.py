"""
Utilities package for Academic Batch Orchestrator

Contains utility modules for configuration, database access and logging.
"""

from .config import BatchSettings, load_settings
from .database import StoreAccessor, StoreRegistry
from .logger import setup_logger, get_logger, set_log_context, LoggerContext

__all__ = [
    "BatchSettings",
    "load_settings",
    "StoreAccessor",
    "StoreRegistry",
    "setup_logger",
    "get_logger",
    "set_log_context",
    "LoggerContext"
]
