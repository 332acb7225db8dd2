"""Typit - Typst rendering bot for Matrix."""

__version__ = "0.1.0"
