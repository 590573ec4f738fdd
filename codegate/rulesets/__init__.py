"""Bundled rule-sets."""
