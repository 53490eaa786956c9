"""Session key material and field encryption for the confidential path."""
