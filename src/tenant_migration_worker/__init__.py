"""Tenant migration and backup execution engine."""

__version__ = "1.0.0"
