"""Transfer orchestration core."""
