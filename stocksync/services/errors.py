"""Exceptions métier du cœur de synchronisation.

Les endpoints FastAPI les traduisent en codes HTTP (voir api/v1/endpoints).
"""

from __future__ import annotations

from typing import Any


class StockSyncError(Exception):
    pass


# ---------- SOURCES EXTERNES ----------
class SourceError(StockSyncError):
    pass


class SourceUnavailableError(SourceError):
    """Portail injoignable (réseau, timeout, login) : l'étape en cours est abandonnée."""


class SourceRecordError(SourceError):
    """Un enregistrement précis n'a pas pu être lu ; le lot continue."""

    def __init__(self, key: str, message: str):
        super().__init__(f"{key}: {message}")
        self.key = key
        self.message = message


class SourceNotConfiguredError(SourceError):
    def __init__(self, source: str):
        super().__init__(f"No adapter configured for source '{source}'")
        self.source = source


# ---------- ORCHESTRATION ----------
class SyncInProgressError(StockSyncError):
    def __init__(self, source: str):
        super().__init__(f"A sync is already running for source '{source}'")
        self.source = source


class SyncAbortedError(StockSyncError):
    """Sync interrompue par une erreur irrécupérable ; porte le résultat partiel."""

    def __init__(self, source: str, cause: BaseException, partial: Any):
        super().__init__(f"Sync aborted for source '{source}': {cause}")
        self.source = source
        self.cause = cause
        self.partial = partial


# ---------- DONNÉES ----------
class RecordNotFoundError(StockSyncError):
    def __init__(self, kind: str, key: str):
        super().__init__(f"{kind} not found: {key}")
        self.kind = kind
        self.key = key


class IdentityNotFoundError(StockSyncError):
    def __init__(self, sku: str):
        super().__init__(f"Product not found: {sku}")
        self.sku = sku


class InvalidMovementError(StockSyncError):
    pass


class InvalidMappingError(StockSyncError):
    pass
