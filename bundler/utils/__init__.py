"""Utility helpers for bundler."""
