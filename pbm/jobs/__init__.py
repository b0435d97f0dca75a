"""Background jobs: the durable queue and the workers registered on it."""
