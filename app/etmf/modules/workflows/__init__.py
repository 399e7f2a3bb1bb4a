"""Ordered review/approval workflows attached to documents."""
