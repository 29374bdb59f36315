"""Schema registration and the markdown schema loader."""
