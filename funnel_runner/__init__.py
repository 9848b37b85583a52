"""Humanized multi-step chat funnels."""

__version__ = "0.1.0"
