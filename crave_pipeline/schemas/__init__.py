"""Pydantic schemas shared across pipeline stages."""
