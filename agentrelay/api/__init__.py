"""HTTP/SSE surface."""
