"""Bidirectional product, order and return synchronization engine."""

__version__ = "1.0.0"
