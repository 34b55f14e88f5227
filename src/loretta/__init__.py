"""Loretta habit and mission progress engine."""

__version__ = "0.1.0"
