"""Typed repositories over the log store."""
