"""Streaming HTTP bridge to the CosyVoice duplex synthesis service."""

__all__ = ["api"]
