"""HTTP surface for vidrelay."""
