"""Command-line interface for proclife."""
