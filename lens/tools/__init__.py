"""Operational tools for Lens."""
