"""Chimera: orchestration and concurrency engine for multi-model task execution."""

from .engine import Engine, init_engine, shutdown_engine

__version__ = "0.1.0"

__all__ = ["Engine", "init_engine", "shutdown_engine", "__version__"]
