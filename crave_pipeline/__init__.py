"""Crave community content ingestion and entity resolution pipeline."""

__version__ = "0.1.0"
