"""I/O layer: serialization and event-stream decoding."""
