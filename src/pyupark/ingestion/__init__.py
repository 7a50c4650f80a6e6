"""Ingestion layer.

This package contains decoders that turn raw hardware messages (sensor
sweeps, device status, gate status) into slot deltas and viewer events.
"""

__all__: list[str] = []
