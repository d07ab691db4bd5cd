"""HTTP dashboard API."""
