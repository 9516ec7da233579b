"""Shared infrastructure: logging, config files, asyncio helpers."""
