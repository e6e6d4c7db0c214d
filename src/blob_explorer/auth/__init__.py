"""Credential suppliers."""
