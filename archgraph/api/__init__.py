"""
HTTP surface over ArchGraphBackend.

Usage:
    uvicorn archgraph.api.server:app
"""
