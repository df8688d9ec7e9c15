"""Lightweight QUIC-style transport over UDP for constrained sensor networks."""

__version__ = "0.1.0"