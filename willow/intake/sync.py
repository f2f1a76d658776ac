"""Session Synchronizer — commits the session snapshot to the backing entity.

The first snapshot carrying an identity creates the care recipient; every
later one patches it. ``external_id`` is the idempotency anchor: its presence
alone decides create versus patch.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, NamedTuple

from willow.errors import PersistenceError, TransportError
from willow.intake.snapshot import changed_fields, merge_snapshot
from willow.models import Directive, IntakeSnapshot

logger = logging.getLogger(__name__)

Extractor = Callable[[list[dict]], Awaitable[Directive | None]]

# Snapshot field -> backing entity field. Medications go out as child records;
# helpers have no backing field.
_RECIPIENT_FIELDS = {
    "identity_name": "full_name",
    "age": "age",
    "city": "city",
    "state": "state",
    "conditions": "conditions",
    "allergies": "allergies",
}


def recipient_payload(fields: dict[str, Any]) -> dict[str, Any]:
    """Map snapshot field names to the backing entity's field names."""
    return {_RECIPIENT_FIELDS[name]: value for name, value in fields.items() if name in _RECIPIENT_FIELDS}


class FinalizeResult(NamedTuple):
    snapshot: IntakeSnapshot
    external_id: str | None
    recovered: bool  # full-transcript extraction supplied the identity


class SessionSynchronizer:
    def __init__(self, backend):
        self.backend = backend
        self.external_id: str | None = None
        self._creating = False
        self._creation_settled = asyncio.Event()
        self._creation_settled.set()
        self._synced: IntakeSnapshot | None = None
        # Newest snapshot handed in; every patch diffs _synced against it
        self._latest: IntakeSnapshot | None = None
        self._patch_lock = asyncio.Lock()
        self._written_medications: set[str] = set()

    @property
    def creation_in_progress(self) -> bool:
        return self._creating

    async def sync(self, snapshot: IntakeSnapshot) -> None:
        """Create or patch the backing entity for ``snapshot``. Never raises PersistenceError."""
        self._latest = snapshot
        if self.external_id is None:
            if snapshot.identity_name is None:
                return
            await self._create(snapshot)
        else:
            await self._patch()

    async def _create(self, snapshot: IntakeSnapshot) -> None:
        # Check-and-set happens before the first await, so concurrent callers
        # on the same loop cannot both pass.
        if self._creating:
            logger.info("[Sync] Creation already in progress, skipping duplicate create")
            return
        self._creating = True
        self._creation_settled.clear()
        try:
            payload = {field: getattr(snapshot, name) for name, field in _RECIPIENT_FIELDS.items()}
            self.external_id = await self.backend.create_recipient(payload)
            self._synced = snapshot
        except PersistenceError as e:
            logger.warning(f"[Sync] Create failed, will retry on a later turn: {e}")
            return
        finally:
            self._creating = False
            self._creation_settled.set()

        logger.info(f"[Sync] Created recipient {self.external_id} ({snapshot.identity_name})")
        await self._write_medications(snapshot)

        # Anything newer that arrived while creating
        await self._patch()

    async def _patch(self) -> None:
        """Bring the backing entity up to the newest snapshot.

        Patches run one at a time and always target ``_latest`` as of lock
        entry, so ``_synced`` only ever moves forward.
        """
        async with self._patch_lock:
            target = self._latest
            fields = recipient_payload(changed_fields(self._synced, target))
            if fields:
                try:
                    await self.backend.patch_recipient(self.external_id, fields)
                    self._synced = target
                    logger.info(f"[Sync] Patched recipient {self.external_id}: {sorted(fields)}")
                except PersistenceError as e:
                    logger.warning(f"[Sync] Patch failed for {self.external_id}: {e}")
            else:
                self._synced = target
            await self._write_medications(target)

    async def _write_medications(self, snapshot: IntakeSnapshot) -> None:
        """Write each not-yet-written medication as an independent best-effort child record."""
        new = [med for med in snapshot.medications if med not in self._written_medications]
        if not new:
            return
        # Marked before the calls: a failed write is not retried.
        self._written_medications.update(new)
        results = await asyncio.gather(
            *(self.backend.create_medication(self.external_id, med) for med in new),
            return_exceptions=True,
        )
        for med, result in zip(new, results):
            if isinstance(result, BaseException):
                logger.warning(f"[Sync] Medication write failed for '{med}': {result}")

    async def _wait_for_creation(self) -> None:
        while self._creating:
            await self._creation_settled.wait()

    async def finalize(
        self,
        snapshot: IntakeSnapshot,
        transcript: list[dict],
        extractor: Extractor,
    ) -> FinalizeResult:
        """Last-resort commit when the user ends intake.

        If no identity was captured incrementally, runs one full-transcript
        extraction first. Completes without a backing entity when no identity
        can be recovered.
        """
        await self._wait_for_creation()

        recovered = False
        if snapshot.identity_name is None and any(m["role"] == "user" for m in transcript):
            logger.info(f"[Sync] No identity captured, re-extracting from {len(transcript)} turns")
            try:
                directive = await extractor(transcript)
            except TransportError as e:
                logger.warning(f"[Sync] Full-transcript extraction failed: {e}")
                directive = None
            snapshot = merge_snapshot(snapshot, directive)
            recovered = snapshot.identity_name is not None
            await self._wait_for_creation()

        self._latest = snapshot
        if self.external_id is None:
            if snapshot.identity_name is not None:
                await self._create(snapshot)
            else:
                logger.info("[Sync] Finalizing without a backing entity (no identity recoverable)")
        else:
            await self._patch()

        return FinalizeResult(snapshot, self.external_id, recovered)
