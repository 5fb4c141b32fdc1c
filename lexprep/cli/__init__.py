"""Command-line interface for lexprep."""
