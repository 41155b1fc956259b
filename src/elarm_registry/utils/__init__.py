"""Shared utilities: logging, errors, configuration and shutdown."""
