"""
Reconciler - Splits a batch of records into creates and skips.

Matching is by external id only. The destination is append-only for a run:
a record already present is skipped, never updated.
"""

from typing import Iterable, List, Set

from pydantic import BaseModel, Field

from models.record import CanonicalRecord


class ReconcileResult(BaseModel):
    to_create: List[CanonicalRecord] = Field(default_factory=list)
    to_skip: List[CanonicalRecord] = Field(default_factory=list)


def reconcile(records: Iterable[CanonicalRecord], existing_ids: Iterable[str]) -> ReconcileResult:
    """
    Partition records against the ids already at the destination.

    Pure: neither input is modified. A record whose id repeats an earlier
    record in the same batch is skipped, so a second run over the output
    of the first creates nothing new.
    """
    seen: Set[str] = set(existing_ids)
    result = ReconcileResult()

    for record in records:
        if record.external_id in seen:
            result.to_skip.append(record)
            continue
        seen.add(record.external_id)
        result.to_create.append(record)

    return result
