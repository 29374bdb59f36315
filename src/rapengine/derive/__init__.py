"""Derived attributes: transforms, partition planning and recomputation."""
