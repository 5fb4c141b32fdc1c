"""Durable background jobs: payloads, queue, handlers and worker."""
