"""Lifecycle core of the coordinator.

- Settings loaded from .env
- Structured logging
- A small CLI surface
- Storage, transition engine, routing, timeout scheduling and fanout
"""
