"""Backlog agent fleet: lease-based claiming, execution loops and operator overrides."""

__version__ = "0.1.0"
