"""
In-memory set of accepted transaction references, written through to a
DedupStore.

The in-memory set is authoritative for membership checks. The store is
read at startup (and again on demand until that first read succeeds) and
mirrored on every mutation; when a store call fails the process keeps
serving and the divergence is logged as persistence degraded.
"""
from typing import Iterable, List, Optional, Set

import structlog

from x402_gate.monitoring.metrics import metrics

from .dedup_store import DedupStore, DedupStoreError
from .types import ErrorKind, canonicalize_reference

logger = structlog.get_logger(__name__)


class ProcessedSet:
    """
    Owned set of processed references.

    Every mutation updates memory before its first await, so two coroutines
    in one process can never both claim the same reference.
    """

    def __init__(self, store: DedupStore, atomic_claims: bool = False):
        """
        Initialize processed set.

        Args:
            store: Backing store
            atomic_claims: Treat the store's add-if-absent result as the
                dedup decision (for several instances sharing a store)
        """
        self.store = store
        self.atomic_claims = atomic_claims
        self.degraded = False
        self.loaded = False
        self._references: Set[str] = set()
        self._release_watchers: List[Set[str]] = []
        self._clear_generation = 0

    def __contains__(self, reference: object) -> bool:
        if not isinstance(reference, str):
            return False
        return canonicalize_reference(reference) in self._references

    def __len__(self) -> int:
        return len(self._references)

    def _persistence_degraded(self, operation: str, reference: str, error: Exception) -> None:
        self.degraded = True
        metrics.record_dedup_store_error(self.store.backend_name, operation)
        logger.error(
            "persistence_degraded",
            kind=ErrorKind.PERSISTENCE_DEGRADED.value,
            backend=self.store.backend_name,
            operation=operation,
            transaction_reference=reference or None,
            error=str(error),
        )

    async def _read_store(self) -> Optional[Set[str]]:
        try:
            references = await self.store.load_all()
        except DedupStoreError as e:
            self._persistence_degraded("load", "", e)
            logger.warning(
                "replay_protection_weakened",
                backend=self.store.backend_name,
                known=len(self._references),
            )
            return None
        return {canonicalize_reference(r) for r in references}

    def _mark_loaded(self, event: str) -> None:
        self.loaded = True
        self.degraded = False
        metrics.set_processed_count(len(self._references))
        logger.info(event, backend=self.store.backend_name, count=len(self._references))

    async def load(self) -> bool:
        """
        Load every stored reference into memory, replacing its contents.

        Called once at startup, before any claim. A failed load does not
        raise: the set starts empty and replay protection stays weakened
        until a reload succeeds.

        Returns:
            bool: True if the store was read
        """
        references = await self._read_store()
        if references is None:
            return False
        self._references = references
        self._mark_loaded("processed_set_loaded")
        return True

    async def reload(self) -> bool:
        """
        Merge the store's contents into the live set.

        Safe while requests are in flight: claims made during the read are
        kept, and references released or cleared during the read are not
        brought back.

        Returns:
            bool: True if the store was read
        """
        released: Set[str] = set()
        generation = self._clear_generation
        self._release_watchers.append(released)
        try:
            references = await self._read_store()
        finally:
            self._release_watchers.remove(released)
        if references is None:
            return False
        if generation == self._clear_generation:
            self._references |= references - released
        self._mark_loaded("processed_set_reloaded")
        return True

    async def ensure_loaded(self) -> bool:
        """Retry the initial load if it failed; no store call once loaded."""
        if self.loaded:
            return True
        return await self.reload()

    def _record_released(self, references: Iterable[str]) -> None:
        for watcher in self._release_watchers:
            watcher.update(references)

    async def claim(self, reference: str) -> bool:
        """
        Record a reference as accepted.

        Memory is updated first, then the store. A store failure is logged
        and the claim stands for this process lifetime.

        Returns:
            bool: False if the reference was already accepted (here, or by
                another instance when atomic claims are enabled)
        """
        reference = canonicalize_reference(reference)
        if reference in self._references:
            return False
        self._references.add(reference)
        metrics.set_processed_count(len(self._references))

        try:
            if self.atomic_claims:
                added = await self.store.add_if_absent(reference)
                if not added:
                    logger.warning(
                        "claim_lost_to_other_instance",
                        transaction_reference=reference,
                        backend=self.store.backend_name,
                    )
                    return False
            else:
                await self.store.add(reference)
        except DedupStoreError as e:
            self._persistence_degraded("add", reference, e)
        return True

    async def release(self, reference: str) -> bool:
        """
        Remove an accepted reference.

        Memory removal always stands; store removal is best-effort, and a
        failure means a restart will reload the reference as used.

        Returns:
            bool: False if the reference was not present
        """
        reference = canonicalize_reference(reference)
        if reference not in self._references:
            return False
        self._references.discard(reference)
        self._record_released([reference])
        metrics.set_processed_count(len(self._references))

        try:
            await self.store.remove(reference)
        except DedupStoreError as e:
            self._persistence_degraded("remove", reference, e)
        return True

    async def clear(self) -> None:
        """Empty memory and the store."""
        self._references.clear()
        self._clear_generation += 1
        metrics.set_processed_count(0)
        try:
            await self.store.clear()
        except DedupStoreError as e:
            self._persistence_degraded("clear", "", e)
