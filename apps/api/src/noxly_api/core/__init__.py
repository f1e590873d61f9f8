"""Runtime configuration and logging."""
