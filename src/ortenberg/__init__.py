"""Ortenberg - bank-authorized token withdrawal activation service."""

__version__ = "0.1.0"
