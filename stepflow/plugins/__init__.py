"""Integrations shipped with stepflow, addressed as ``<integration>/<verb>``."""
