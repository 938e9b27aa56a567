"""Coquillage: appointment booking kept in sync across a calendar and a record store."""

__version__ = "1.0.0"
