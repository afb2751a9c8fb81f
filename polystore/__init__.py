"""
Polystore catalog engine.

Profiles JSON payloads, chooses a relational or document backend for each
dataset, generates schemas, and keeps dataset metadata consistent across
both stores behind a best-effort cache.
"""

__version__ = "0.1.0"
