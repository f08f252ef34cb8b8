"""Parley: tool-calling conversation orchestration for LLM backends."""

__version__ = "0.1.0"
