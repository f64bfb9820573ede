"""Colloquy -- conversation orchestration engine for multi-channel chat assistants."""

__version__ = "0.1.0"
