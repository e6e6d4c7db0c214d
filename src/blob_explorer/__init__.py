"""Folder-level operations and signed sharing links over Azure Blob Storage."""

__version__ = "0.1.0"
