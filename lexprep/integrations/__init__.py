"""External capabilities: content generation and authority search."""
