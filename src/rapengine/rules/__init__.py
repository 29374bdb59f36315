"""Constraint evaluation: predicates, rule scripts and localized messages."""
