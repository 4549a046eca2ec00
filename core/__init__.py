"""Shared infrastructure: configuration, logging, errors and metrics."""
