"""Run data, suspension token and binary payload storage."""
