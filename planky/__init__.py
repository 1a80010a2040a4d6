"""Planky: terminal todo list mirrored against a Planka board."""

__version__ = "0.4.0"
