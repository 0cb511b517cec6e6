"""
CLI package for Academic Batch Orchestrator

Provides command-line interface for running jobs, reading the execution history
and starting the scheduler.
"""

from .main import main, cli

__all__ = ["main", "cli"]
