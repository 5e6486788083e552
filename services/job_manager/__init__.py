"""Job manager: the Redis-backed job queue, its retry policy and the management API."""
