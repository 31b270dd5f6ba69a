"""Per-file, per-stage state machine.

Each stage of a file moves through::

    pending ──► processing ──► completed
                   │  ▲
                   ▼  │
                  failed

``processing → processing`` covers a job redelivered after its worker died
mid-attempt.  Moving back to ``pending`` is never a worker transition; only
a reprocess request resets stages (see ``IMetadataStore.reset_stages``).

A stage may leave ``pending`` only when every earlier stage is
``completed``.  The metadata store enforces both rules inside the same
atomic write; :func:`validate_transition` is the pure in-process check
used by the in-memory test store and by callers that want to fail fast.
"""

from __future__ import annotations

from agentkb.models.documents import STAGE_ORDER, ProcessingRecord, StageName, StageStatus
from agentkb.utils.errors import InvalidTransitionError

TRANSITIONS: dict[StageStatus, frozenset[StageStatus]] = {
    StageStatus.PENDING: frozenset({StageStatus.PROCESSING}),
    StageStatus.PROCESSING: frozenset(
        {StageStatus.PROCESSING, StageStatus.COMPLETED, StageStatus.FAILED}
    ),
    StageStatus.FAILED: frozenset({StageStatus.PROCESSING}),
    StageStatus.COMPLETED: frozenset(),
}


def allowed_sources(target: StageStatus) -> frozenset[StageStatus]:
    """Return every status from which *target* may be entered."""
    return frozenset(src for src, targets in TRANSITIONS.items() if target in targets)


def can_transition(current: StageStatus, target: StageStatus) -> bool:
    return target in TRANSITIONS[current]


def earlier_stages(stage: StageName) -> tuple[StageName, ...]:
    return STAGE_ORDER[: stage.position]


def validate_transition(record: ProcessingRecord, stage: StageName, target: StageStatus) -> None:
    """Raise :class:`InvalidTransitionError` if the move is illegal."""
    current = record.get(stage).status
    if not can_transition(current, target):
        raise InvalidTransitionError(
            message=f"{stage.value}: {current.value} -> {target.value} is not allowed",
        )
    for earlier in earlier_stages(stage):
        if record.get(earlier).status != StageStatus.COMPLETED:
            raise InvalidTransitionError(
                message=(
                    f"{stage.value} cannot become {target.value} while "
                    f"{earlier.value} is {record.get(earlier).status.value}"
                ),
            )
