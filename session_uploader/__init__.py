"""Bulk session ingest: manifest resolution, multipart transfer, job polling."""

__version__ = "0.1.0"
