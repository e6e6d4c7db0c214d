"""Uncompressed archive building and archive downloads."""
