"""Question processing core: batching, lifecycle, retry and context."""
