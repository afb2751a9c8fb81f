"""Dataset retrieval in nested-JSON form."""

from polystore.retrieval.service import RetrievalService, project

__all__ = ["RetrievalService", "project"]
