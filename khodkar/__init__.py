"""Khodkar: extract business rules from codebases with a tool-using LLM."""

__version__ = "0.1.0"
