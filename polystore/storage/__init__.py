"""
Data store handles and drivers.

Provides the relational (SQLAlchemy) and document (PyMongo) backends
behind the ``RelationalDriver`` / ``DocumentDriver`` interfaces.
"""

from polystore.storage.adapter import DocumentDriver, RelationalDriver
from polystore.storage.sql import RelationalStoreHandle, SqlAlchemyRelationalDriver
from polystore.storage.mongo import DocumentStoreHandle, PyMongoDocumentDriver

__all__ = [
    "DocumentDriver",
    "RelationalDriver",
    "RelationalStoreHandle",
    "SqlAlchemyRelationalDriver",
    "DocumentStoreHandle",
    "PyMongoDocumentDriver",
]
