"""Core engine: events, translation, orchestration, sandbox policy."""
