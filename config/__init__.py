"""Configuration for vidrelay."""
