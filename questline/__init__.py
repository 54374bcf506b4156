"""Questline engine: narrated content jobs and adventure progression."""

__version__ = "0.1.0"
