"""Building, submitting and tracking confidential computations."""
