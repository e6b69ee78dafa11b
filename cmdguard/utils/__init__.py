"""Shared utilities for cmdguard."""
