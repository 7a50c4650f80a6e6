"""Slot state layer.

This package is the single source of truth for how sensor sweeps,
reservation lifecycle events and operator overrides are merged into
one authoritative record per slot.
"""
