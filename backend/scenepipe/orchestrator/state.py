"""Unit state machine, unit store and batch run aggregate.

Defines the per-scene lifecycle and its legal transitions. The UnitStore is
the single arena of units for a run: every status change goes through an
atomic compare-and-set under a lock, so a manual trigger and the batch
scheduler can race on the same unit without both claiming it.
"""

import logging
import threading
import uuid
from typing import Collection, Iterable, Optional

from scenepipe.schemas.run import BatchRunSummary, RunStatus
from scenepipe.schemas.screenplay import Unit, UnitStatus

logger = logging.getLogger(__name__)

# Legal transitions. Cancellation rollback uses UnitStore.restore instead.
UNIT_TRANSITIONS: dict[UnitStatus, frozenset[UnitStatus]] = {
    UnitStatus.PENDING: frozenset({UnitStatus.IMAGE_IN_FLIGHT}),
    UnitStatus.IMAGE_IN_FLIGHT: frozenset({UnitStatus.IMAGE_DONE, UnitStatus.FAILED}),
    UnitStatus.IMAGE_DONE: frozenset({UnitStatus.VIDEO_IN_FLIGHT, UnitStatus.IMAGE_IN_FLIGHT}),
    UnitStatus.VIDEO_IN_FLIGHT: frozenset({UnitStatus.COMPLETED, UnitStatus.FAILED}),
    UnitStatus.COMPLETED: frozenset({UnitStatus.IMAGE_IN_FLIGHT, UnitStatus.VIDEO_IN_FLIGHT}),
    UnitStatus.FAILED: frozenset({UnitStatus.IMAGE_IN_FLIGHT, UnitStatus.VIDEO_IN_FLIGHT}),
}

IN_FLIGHT_STATES = frozenset({UnitStatus.IMAGE_IN_FLIGHT, UnitStatus.VIDEO_IN_FLIGHT})

# States an explicit retry may start from
RETRYABLE_STATES = frozenset({
    UnitStatus.PENDING,
    UnitStatus.IMAGE_DONE,
    UnitStatus.COMPLETED,
    UnitStatus.FAILED,
})

MAX_IDENTITY_REFERENCES = 2


class IllegalTransitionError(Exception):
    """Raised when a status change is not in UNIT_TRANSITIONS."""


class UnitBusyError(Exception):
    """Raised when a unit is already claimed by another attempt."""


class UnknownUnitError(KeyError):
    """Raised when a unit id is not part of the run."""


def can_transition(current: UnitStatus, target: UnitStatus) -> bool:
    """Check if a unit may move from current to target status."""
    return target in UNIT_TRANSITIONS.get(current, frozenset())


def retry_entry_state(unit: Unit, force_image_regeneration: bool) -> UnitStatus:
    """Pick where a retry restarts: the video stage if an image can be reused.

    Args:
        unit: Current unit snapshot
        force_image_regeneration: Regenerate the image even if one exists

    Returns:
        IMAGE_IN_FLIGHT or VIDEO_IN_FLIGHT
    """
    if unit.image_artifact and not force_image_regeneration:
        return UnitStatus.VIDEO_IN_FLIGHT
    return UnitStatus.IMAGE_IN_FLIGHT


def _entry_changes(target: UnitStatus) -> dict:
    if target == UnitStatus.IMAGE_IN_FLIGHT:
        return {"image_artifact": None, "video_artifact": None, "error_message": None}
    if target == UnitStatus.VIDEO_IN_FLIGHT:
        return {"video_artifact": None, "error_message": None}
    return {}


class CancelToken:
    """Cooperative cancellation flag shared across tasks."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    def is_cancelled(self) -> bool:
        return self._event.is_set()


class UnitStore:
    """Arena of units indexed by id.

    Readers get immutable snapshots; writers go through claim/transition/
    restore, each of which is atomic with respect to the others.
    """

    def __init__(self, units: Iterable[Unit]):
        self._lock = threading.Lock()
        self._units: dict[int, Unit] = {}
        for unit in units:
            if unit.id in self._units:
                raise ValueError(f"duplicate unit id {unit.id}")
            self._units[unit.id] = unit

    def __len__(self) -> int:
        return len(self._units)

    def ids(self) -> list[int]:
        return list(self._units)

    def get(self, unit_id: int) -> Unit:
        with self._lock:
            try:
                return self._units[unit_id]
            except KeyError:
                raise UnknownUnitError(unit_id) from None

    def snapshot(self) -> list[Unit]:
        with self._lock:
            return list(self._units.values())

    def claim(
        self,
        unit_id: int,
        expected: Collection[UnitStatus],
        target: UnitStatus,
    ) -> Optional[tuple[Unit, Unit]]:
        """Atomically move a unit into an in-flight state.

        Returns:
            (previous, claimed) snapshots, or None if the unit's status was
            not one of `expected` at the moment of the check.
        """
        with self._lock:
            current = self._units.get(unit_id)
            if current is None:
                raise UnknownUnitError(unit_id)
            if current.status not in expected:
                return None
            if not can_transition(current.status, target):
                raise IllegalTransitionError(
                    f"unit {unit_id}: {current.status.value} -> {target.value}"
                )
            claimed = current.evolve(status=target, **_entry_changes(target))
            self._units[unit_id] = claimed
        logger.info(f"Unit {unit_id}: {current.status.value} -> {target.value}")
        return current, claimed

    def transition(self, unit_id: int, target: UnitStatus, **changes) -> Unit:
        """Move a unit to `target`, applying field changes in the same step."""
        with self._lock:
            current = self._units.get(unit_id)
            if current is None:
                raise UnknownUnitError(unit_id)
            if not can_transition(current.status, target):
                raise IllegalTransitionError(
                    f"unit {unit_id}: {current.status.value} -> {target.value}"
                )
            updated = current.evolve(status=target, **{**_entry_changes(target), **changes})
            self._units[unit_id] = updated
        logger.info(f"Unit {unit_id}: {current.status.value} -> {target.value}")
        return updated

    def restore(self, unit_id: int, snapshot: Unit, expected: UnitStatus) -> bool:
        """Roll a unit back to an earlier snapshot if it is still in `expected`.

        Used when cancellation is observed mid-stage so a late result never
        lands in shared state.
        """
        with self._lock:
            current = self._units.get(unit_id)
            if current is None or current.status != expected:
                return False
            self._units[unit_id] = snapshot
        logger.info(
            f"Unit {unit_id}: {expected.value} rolled back to {snapshot.status.value}"
        )
        return True

    def update(self, unit_id: int, **changes) -> Unit:
        """Change non-status fields (e.g. the custom video prompt)."""
        if "status" in changes:
            raise ValueError("use transition() to change status")
        with self._lock:
            current = self._units.get(unit_id)
            if current is None:
                raise UnknownUnitError(unit_id)
            updated = current.evolve(**changes)
            self._units[unit_id] = updated
        return updated


class BatchRun:
    """All units of one generation request plus run-level flags.

    `cancel()` is the only operation expected from outside the task that
    runs the batch. It also cancels every retry attempt started on the run.
    """

    def __init__(
        self,
        units: Iterable[Unit],
        character_references: Iterable[str] = (),
        user_reference_images: Iterable[str] = (),
        concurrency_limit: int = 3,
        run_id: Optional[str] = None,
    ):
        if concurrency_limit <= 0:
            raise ValueError(f"concurrency_limit must be positive, got {concurrency_limit}")

        refs = [ref for ref in character_references if ref]
        if len(refs) > MAX_IDENTITY_REFERENCES:
            logger.warning(
                f"{len(refs)} character references given, keeping the first {MAX_IDENTITY_REFERENCES}"
            )
        self.run_id = run_id or uuid.uuid4().hex
        self.store = UnitStore(units)
        self.character_references = refs[:MAX_IDENTITY_REFERENCES]
        self.user_reference_images = [img for img in user_reference_images if img]
        self.concurrency_limit = concurrency_limit
        self.token = CancelToken()
        self.consistency_degraded = False
        self.progress = 0.0
        self._finished = False
        self._attempt_lock = threading.Lock()
        self._attempt_tokens: set[CancelToken] = set()

    @property
    def cancelled(self) -> bool:
        return self.token.is_cancelled()

    @property
    def finished(self) -> bool:
        return self._finished

    @property
    def idle(self) -> bool:
        """Finished with no unit being processed (e.g. by a late retry)."""
        return self._finished and not any(
            unit.status in IN_FLIGHT_STATES for unit in self.store.snapshot()
        )

    def mark_finished(self) -> None:
        self._finished = True

    def cancel(self) -> None:
        logger.info(f"Run {self.run_id}: cancellation requested")
        self.token.cancel()
        with self._attempt_lock:
            for token in self._attempt_tokens:
                token.cancel()

    def open_attempt(self) -> CancelToken:
        """Create a cancellation token for a single-unit retry."""
        token = CancelToken()
        with self._attempt_lock:
            self._attempt_tokens.add(token)
        return token

    def close_attempt(self, token: CancelToken) -> None:
        with self._attempt_lock:
            self._attempt_tokens.discard(token)

    def status(self) -> RunStatus:
        units = self.store.snapshot()
        if self.cancelled:
            return RunStatus.CANCELLED
        if not self._finished or any(u.status in IN_FLIGHT_STATES for u in units):
            return RunStatus.RUNNING
        completed = sum(1 for u in units if u.status == UnitStatus.COMPLETED)
        if completed == len(units):
            return RunStatus.COMPLETED
        if completed == 0:
            return RunStatus.FAILED
        return RunStatus.PARTIAL

    def summary(self) -> BatchRunSummary:
        units = self.store.snapshot()
        return BatchRunSummary(
            run_id=self.run_id,
            units=units,
            character_references=list(self.character_references),
            concurrency_limit=self.concurrency_limit,
            cancelled=self.cancelled,
            status=self.status(),
            progress=self.progress,
            succeeded=[u.id for u in units if u.status == UnitStatus.COMPLETED],
            failed=[u.id for u in units if u.status == UnitStatus.FAILED],
            consistency_degraded=self.consistency_degraded,
        )
