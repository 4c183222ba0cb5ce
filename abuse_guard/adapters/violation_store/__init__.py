"""Violation record storage adapters (append-only)."""
