"""Skylink blocker: sweeps reported skylinks and blocks them in skyd."""

__version__ = "1.0.0"
