"""HTTP surface for ballot casting and results."""
