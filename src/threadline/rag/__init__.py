"""Retrieval, prompt assembly, provider routing and streaming."""
