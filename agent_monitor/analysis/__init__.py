"""Analyzers over stored sessions and repository data."""
