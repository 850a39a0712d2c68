"""Configuration for ctx-index."""
