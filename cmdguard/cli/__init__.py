"""Command-line interface for cmdguard."""
