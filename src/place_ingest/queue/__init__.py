"""Redis-backed update queue: producer, worker pool, registry and monitor."""
