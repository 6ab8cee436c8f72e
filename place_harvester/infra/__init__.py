"""Infra layer utilities (document storage)."""

from .storage import (
    DocumentCollection,
    DocumentStore,
    MongoDocumentStore,
    SQLiteDocumentStore,
    open_document_store,
)

__all__ = [
    "DocumentCollection",
    "DocumentStore",
    "MongoDocumentStore",
    "SQLiteDocumentStore",
    "open_document_store",
]
