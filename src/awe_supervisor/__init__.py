"""Supervisor for long-running agent processes with file-based pause and alignment."""

__version__ = '0.1.0'
