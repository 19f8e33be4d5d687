"""Serializable data: items, node results, scheduling state, suspension tokens."""
