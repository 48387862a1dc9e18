"""Command-line interface for deploypipe."""
