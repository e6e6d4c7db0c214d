"""Capability URL parsing and user delegation signing."""
