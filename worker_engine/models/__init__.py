"""Data models for the worker engine."""
