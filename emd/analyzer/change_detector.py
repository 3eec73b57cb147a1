"""EMD — Change Detector.

Classifies the difference between the previous and current fetch:
- added: job not seen before
- modified: a tracked field changed
- removed: job missing from the fetch AND its job date is inside the window
  the fetch was meant to cover

Jobs missing because the source's query window slid past their date are
ignored. Pure: the cache is only mutated by the poller after diffing.
"""

from collections import Counter
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, List, Mapping, Optional, Sequence

from emd.core.field_registry import JOB_FIELDS, FieldCategory
from emd.models.cycle_models import ChangeAnalysis, ChangeRecord, ChangeType, FieldDiff
from emd.models.job_models import JobSnapshot
from emd.core.logging import get_logger

logger = get_logger("analyzer.changes")

WindowPredicate = Callable[[Any], bool]


def _is_blank(value: Any) -> bool:
    return value is None or value == ""


def has_changed(old_value: Any, new_value: Any) -> bool:
    """Compare two field values; ``None`` and ``""`` are equivalent."""
    if _is_blank(old_value) and _is_blank(new_value):
        return False
    if _is_blank(old_value) or _is_blank(new_value):
        return True
    return old_value != new_value


def compare_snapshots(old: JobSnapshot, new: JobSnapshot) -> List[FieldDiff]:
    """Field-level diff restricted to the tracked field registry."""
    diffs: List[FieldDiff] = []
    for name, definition in JOB_FIELDS.items():
        old_value = getattr(old, name, None)
        new_value = getattr(new, name, None)
        if has_changed(old_value, new_value):
            diffs.append(
                FieldDiff(
                    field=name,
                    category=definition.category.value,
                    old_value=old_value,
                    new_value=new_value,
                    critical=definition.critical,
                )
            )
    return diffs


def diff(
    previous_ids: Iterable[str],
    previous_snapshots: Mapping[str, JobSnapshot],
    current_snapshots: Sequence[JobSnapshot],
    window_predicate: WindowPredicate,
    detected_at: Optional[datetime] = None,
) -> List[ChangeRecord]:
    """Compute the classified change list for one cycle."""
    detected_at = detected_at or datetime.now(timezone.utc)
    previous = set(previous_ids)
    current_ids = {s.entity_id for s in current_snapshots}
    changes: List[ChangeRecord] = []

    for snapshot in current_snapshots:
        entity_id = snapshot.entity_id
        if entity_id not in previous:
            changes.append(
                ChangeRecord(
                    entity_id=entity_id,
                    change_type=ChangeType.ADDED,
                    detected_at=detected_at,
                )
            )
            continue

        old = previous_snapshots.get(entity_id)
        if old is None:
            continue
        field_diffs = compare_snapshots(old, snapshot)
        if field_diffs:
            changes.append(
                ChangeRecord(
                    entity_id=entity_id,
                    change_type=ChangeType.MODIFIED,
                    field_diffs=field_diffs,
                    detected_at=detected_at,
                )
            )

    ignored = 0
    for entity_id in sorted(previous - current_ids):
        old = previous_snapshots.get(entity_id)
        if old is None or not window_predicate(old.logical_date):
            ignored += 1
            continue
        changes.append(
            ChangeRecord(
                entity_id=entity_id,
                change_type=ChangeType.REMOVED,
                detected_at=detected_at,
            )
        )

    if ignored:
        logger.debug(f"Ignored {ignored} missing jobs outside the comparison window")
    return changes


# ─────────────────────────────────────────────
# ANALYSIS
# ─────────────────────────────────────────────


def analyze_changes(changes: Sequence[ChangeRecord]) -> ChangeAnalysis:
    """Summarize a change list by type and by tracked field category."""
    counts = Counter(c.change_type for c in changes)
    field_counts: Counter = Counter()
    analysis = ChangeAnalysis(
        added=counts.get(ChangeType.ADDED, 0),
        modified=counts.get(ChangeType.MODIFIED, 0),
        removed=counts.get(ChangeType.REMOVED, 0),
    )

    for change in changes:
        for fd in change.field_diffs:
            field_counts[fd.field] += 1
            if fd.critical:
                analysis.critical_changes += 1
            if fd.category == FieldCategory.STATUS.value:
                analysis.status_changes += 1
            elif fd.category == FieldCategory.ASSIGNMENT.value:
                analysis.assignment_changes += 1
            elif fd.category == FieldCategory.TIMING.value:
                analysis.time_changes += 1

    analysis.most_changed_fields = dict(
        sorted(field_counts.items(), key=lambda kv: (-kv[1], kv[0]))
    )
    return analysis


def critical_changes(changes: Sequence[ChangeRecord]) -> List[ChangeRecord]:
    """Modified records reduced to their critical field diffs."""
    critical: List[ChangeRecord] = []
    for change in changes:
        if change.change_type != ChangeType.MODIFIED:
            continue
        diffs = [fd for fd in change.field_diffs if fd.critical]
        if diffs:
            critical.append(change.model_copy(update={"field_diffs": diffs}))
    return critical
