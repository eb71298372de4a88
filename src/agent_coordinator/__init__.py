"""Staged LLM request planning with an experience-driven insight loop."""

__version__ = "0.1.0"
