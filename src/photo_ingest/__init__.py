"""Asynchronous media ingestion pipeline for a photo-sharing platform."""

__version__ = "0.1.0"
