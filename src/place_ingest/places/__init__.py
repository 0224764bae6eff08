"""Place records consumed by queue handlers and sharded readers."""
