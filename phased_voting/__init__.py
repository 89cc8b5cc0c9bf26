"""Phased voting coordinator: two-round election with live tallies."""

__version__ = '1.0.0'
