"""Grounded retrieval: source governance, authority storage, evidence and fallbacks."""
