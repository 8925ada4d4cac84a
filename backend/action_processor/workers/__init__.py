"""Long-running consumers."""
