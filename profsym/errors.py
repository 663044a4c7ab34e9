"""
errors.py

Exceptions that end a symbolization pass.
"""


class SymbolizationError(Exception):
    """A symbolization pass failed as a whole."""


class RemoteSymbolizationError(SymbolizationError):
    """No symbol server could symbolize the profile."""
