"""turnwright: turn orchestration for streaming, tool-calling chat models."""

__version__ = "0.1.0"
