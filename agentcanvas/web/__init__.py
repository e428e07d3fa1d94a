"""HTTP/SSE surface for the canvas UI."""
