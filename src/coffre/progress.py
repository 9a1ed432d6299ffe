"""
Flux de progression des opérations longues (Add, Verify, Pack).

Une opération longue est un producteur asyncio qui publie des
événements ``Progress`` dans une file bornée; l'appelant les consomme
avec ``async for``. Si l'appelant ne lit pas, le producteur se bloque
(contre-pression). L'annulation est coopérative: le producteur la
constate entre deux chunks ou deux archives, jamais au milieu d'un chunk.

Example:
    >>> import asyncio
    >>> from coffre.progress import ProgressStream, Progress
    >>> async def producer(stream):
    ...     await stream.emit(Progress(kind="archive", path="a"))
    ...     return 42
    >>> async def main():
    ...     stream = ProgressStream(producer)
    ...     events = await stream.drain()
    ...     return len(events), stream.result
    >>> asyncio.run(main())
    (1, 42)
"""

import time
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .config import COFFRE_CONFIG
from .exceptions import CancellationSignal
from .models import Stats

# Types d'événements
KIND_ITEM = 'item'          # début d'une archive
KIND_CHUNK = 'chunk'        # chunk traité
KIND_ARCHIVE = 'archive'    # archive terminée (ou vérifiée)
KIND_CHUNK_REMOVED = 'chunk_removed'
KIND_ERROR = 'error'

_END = object()


@dataclass
class Progress:
    """
    Événement de progression.

    Attributes:
        kind: Type d'événement
        path: Archive (ou hash de chunk pour Pack) concernée
        current_item_stats: Statistiques de l'élément en cours
        total_statistics: Statistiques cumulées de l'opération
        error: Erreur associée (événements 'error')
        timestamp: Horodatage de l'événement
        item_started: Début du traitement de l'élément en cours
    """
    kind: str
    path: str = ""
    current_item_stats: Stats = field(default_factory=Stats)
    total_statistics: Stats = field(default_factory=Stats)
    error: Optional[Exception] = None
    timestamp: float = field(default_factory=time.monotonic)
    item_started: Optional[float] = None

    @property
    def is_error(self) -> bool:
        return self.error is not None

    def transfer_speed(self) -> float:
        """Débit de l'élément en cours, en octets par seconde."""
        if self.item_started is None:
            return 0.0
        elapsed = self.timestamp - self.item_started
        if elapsed <= 0:
            return 0.0
        return self.current_item_stats.transferred / elapsed


Producer = Callable[['ProgressStream'], Awaitable[Any]]


class ProgressStream:
    """
    Flux borné producteur/consommateur.

    Le producteur démarre à la première itération. Les exceptions du
    producteur sont relancées côté consommateur à la fin du flux.

    Attributes:
        errors: Erreurs publiées par le producteur
        result: Valeur de retour du producteur
    """

    def __init__(self, producer: Producer, queue_size: Optional[int] = None,
                 cancel: Optional[asyncio.Event] = None,
                 logger: Optional[logging.Logger] = None,
                 config: Optional[Dict[str, Any]] = None):
        self._producer = producer
        self._queue_size = queue_size or (config or COFFRE_CONFIG)['PROGRESS']['QUEUE_SIZE']
        self._queue: Optional[asyncio.Queue] = None
        self._task: Optional[asyncio.Task] = None
        self._cancel_event = cancel
        self._cancelled = False
        self._finished = False
        self.errors: List[Exception] = []
        self.result: Any = None
        self.logger = logger or logging.getLogger(__name__)

    # -- côté producteur ------------------------------------------------

    async def emit(self, progress: Progress) -> None:
        if progress.error is not None:
            self.errors.append(progress.error)
        await self._queue.put(progress)

    def check_cancelled(self) -> None:
        """Lève CancellationSignal si l'annulation a été demandée."""
        if self.cancelled:
            raise CancellationSignal("Operation cancelled")

    # -- côté consommateur ----------------------------------------------

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled or (self._cancel_event is not None and self._cancel_event.is_set())

    @property
    def error_count(self) -> int:
        return len(self.errors)

    @property
    def done(self) -> bool:
        return self._finished

    def _start(self) -> None:
        if self._task is None:
            self._queue = asyncio.Queue(maxsize=self._queue_size)
            self._task = asyncio.ensure_future(self._run())

    async def _run(self) -> None:
        try:
            self.result = await self._producer(self)
        except CancellationSignal:
            self.logger.info("Opération annulée")
        finally:
            # Flux abandonné par aclose: plus aucun lecteur
            if not self._finished:
                await self._queue.put(_END)

    def __aiter__(self) -> 'ProgressStream':
        self._start()
        return self

    async def __anext__(self) -> Progress:
        if self._finished:
            raise StopAsyncIteration
        self._start()
        item = await self._queue.get()
        if item is _END:
            self._finished = True
            # Relance l'exception éventuelle du producteur
            await self._task
            raise StopAsyncIteration
        return item

    async def drain(self) -> List[Progress]:
        """Consomme tout le flux et retourne les événements."""
        return [event async for event in self]

    async def aclose(self) -> None:
        """Abandonne le flux: annule et arrête le producteur."""
        self.cancel()
        self._finished = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
