"""Sync and classification-action engine."""
