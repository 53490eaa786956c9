"""HTTP surface over the mode adapter."""
