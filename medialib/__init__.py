"""Ingestion pipeline and streaming helpers for the media library backend."""

__version__ = "1.0.0"
