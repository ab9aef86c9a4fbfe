"""
Frontière avec les portails externes.

Le scraping (navigateur, login, sélecteurs) vit hors du cœur : un adapter
n'a qu'à respecter SourceAdapter. Les adapters sont déclarés dans la config
sous forme "module:factory" et chargés par load_adapter().
"""

from __future__ import annotations

import importlib
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Protocol, Sequence, runtime_checkable

import structlog

from stocksync.app.db.models.core_types import FetchDirection
from stocksync.services.errors import SourceUnavailableError

logger = structlog.get_logger(__name__)

# Erreurs d'adapter qui interrompent l'étape en cours
UNAVAILABLE_ERRORS = (SourceUnavailableError, TimeoutError, ConnectionError)


@dataclass(frozen=True)
class DetailRef:
    number: str
    url: str | None = None


@runtime_checkable
class SourceAdapter(Protocol):
    def fetch_list(
        self,
        limit: int | None,
        direction: FetchDirection,
        feed: str,
    ) -> Sequence[Any | Mapping[str, Any]]:
        ...

    def fetch_detail(self, ref: DetailRef) -> Any | Mapping[str, Any]:
        ...

    def fetch_catalog(self, limit: int | None = None) -> Sequence[Any | Mapping[str, Any]]:
        ...


class RetryingAdapter:
    """
    Relance les appels d'un adapter sur erreur réseau / timeout.

    attempts=3, delay=2s, backoff exponentiel (2s puis 4s).
    Au-delà : SourceUnavailableError.
    """

    def __init__(
        self,
        inner: SourceAdapter,
        *,
        attempts: int = 3,
        delay: float = 2.0,
        backoff: bool = True,
        sleep: Callable[[float], Any] = time.sleep,
        name: str = "source",
    ):
        if attempts < 1:
            raise ValueError("attempts must be >= 1")
        self.inner = inner
        self.attempts = attempts
        self.delay = delay
        self.backoff = backoff
        self.sleep = sleep
        self.name = name

    def _call(self, operation: str, fn: Callable[[], Any]) -> Any:
        last_exc: BaseException | None = None
        for attempt in range(1, self.attempts + 1):
            try:
                return fn()
            except UNAVAILABLE_ERRORS as exc:
                last_exc = exc
                if attempt == self.attempts:
                    break
                wait = self.delay * (2 ** (attempt - 1)) if self.backoff else self.delay
                logger.warning(
                    "Source call failed, retrying",
                    source=self.name,
                    operation=operation,
                    attempt=attempt,
                    attempts=self.attempts,
                    retry_in=wait,
                    error=str(exc),
                )
                self.sleep(wait)

        logger.error(
            "Source call failed after retries",
            source=self.name,
            operation=operation,
            attempts=self.attempts,
            error=str(last_exc),
        )
        if isinstance(last_exc, SourceUnavailableError):
            raise last_exc
        raise SourceUnavailableError(f"{self.name} {operation} failed: {last_exc}") from last_exc

    def fetch_list(self, limit, direction, feed):
        return self._call("fetch_list", lambda: self.inner.fetch_list(limit, direction, feed))

    def fetch_detail(self, ref: DetailRef):
        return self._call("fetch_detail", lambda: self.inner.fetch_detail(ref))

    def fetch_catalog(self, limit=None):
        return self._call("fetch_catalog", lambda: self.inner.fetch_catalog(limit))


def load_adapter(path: str) -> SourceAdapter:
    """
    "package.module:factory" -> instance d'adapter.

    factory peut être une classe ou une fonction sans argument.
    """
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Adapter path must look like 'module:factory' (got {path!r})")

    module = importlib.import_module(module_name)
    factory = getattr(module, attr)
    adapter = factory()
    if not isinstance(adapter, SourceAdapter):
        raise TypeError(f"{path} did not produce a SourceAdapter")
    return adapter
