"""Error taxonomy shared by the harvester components."""

from __future__ import annotations


class HarvesterError(Exception):
    """Base class for all expected harvester failures."""


class ConfigurationError(HarvesterError):
    """Required configuration (API key, store URI) is missing or invalid."""


class ValidationError(HarvesterError):
    """A required query parameter is missing; raised before any state is touched."""


class TransportError(HarvesterError):
    """The external search API could not be reached or returned an error."""


class PersistenceError(HarvesterError):
    """The document store is unavailable or rejected an operation."""


class DuplicateDocumentError(PersistenceError):
    """An insert collided with an existing unique key."""


class QueryLockedError(HarvesterError):
    """Another run currently holds the lease for this fingerprint."""


class LeaseLostError(QueryLockedError):
    """The lease held by this run expired and was taken over."""


class RunCancelledError(HarvesterError):
    """The run was stopped through its cancellation token."""


__all__ = [
    "ConfigurationError",
    "DuplicateDocumentError",
    "HarvesterError",
    "LeaseLostError",
    "PersistenceError",
    "QueryLockedError",
    "RunCancelledError",
    "TransportError",
    "ValidationError",
]
