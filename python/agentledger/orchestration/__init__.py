"""Per-task workflow orchestration."""
