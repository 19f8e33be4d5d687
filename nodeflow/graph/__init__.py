"""Graph structures, expression resolution, scheduling and execution."""
