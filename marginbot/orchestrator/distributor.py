"""Round-robin distribution of a record batch over concurrent credentials.

Each credential may process at most ``K`` records per cycle (the
*per-credential cap*, never above :data:`HARD_CAP`).  Given ``C`` active
credentials the cycle fetches up to ``C × K`` records and deals them out like
cards: record ``i`` goes to credential ``i mod C``.  Sub-batch sizes therefore
differ by at most one, and the earliest credentials receive the extra record
when the batch does not divide evenly.

Typical usage::

    from marginbot.orchestrator.distributor import effective_cap, split_batch

    cap = effective_cap(settings.max_records_per_credential)
    sub_batches = split_batch(records, len(credentials), cap)
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Final, TypeVar

__all__ = [
    "HARD_CAP",
    "effective_cap",
    "split_batch",
]

logger = logging.getLogger(__name__)

#: Absolute ceiling on records handled by one credential in one cycle.  The
#: provider enforces one consult window per hour per tenant, and this is the
#: most a single window may carry.
HARD_CAP: Final[int] = 250

T = TypeVar("T")


def effective_cap(configured: int | None) -> int:
    """Clamp the configured per-credential cap into ``[1, HARD_CAP]``.

    An unset or non-positive value means "use the ceiling".

    Examples::

        effective_cap(100)    # 100
        effective_cap(1000)   # 250
        effective_cap(0)      # 250
        effective_cap(None)   # 250
    """
    if configured is None or configured <= 0:
        return HARD_CAP
    return min(configured, HARD_CAP)


def split_batch(
    records: Sequence[T],
    credential_count: int,
    per_credential_cap: int,
) -> list[list[T]]:
    """Split *records* into ``credential_count`` disjoint sub-batches.

    Only the first ``credential_count × per_credential_cap`` records are
    considered; anything beyond that is left for a later cycle.  Record ``i``
    goes to sub-batch ``i mod credential_count`` and the original order is
    preserved inside each sub-batch.

    Args:
        records: Ordered records fetched for the cycle.
        credential_count: Number of active credentials (``C``).
        per_credential_cap: Maximum records per credential (``K``).

    Returns:
        ``C`` lists (possibly empty).  ``C <= 0`` yields no lists at all;
        ``K <= 0`` yields ``C`` empty lists.
    """
    if credential_count <= 0:
        return []

    batches: list[list[T]] = [[] for _ in range(credential_count)]
    if per_credential_cap <= 0:
        return batches

    limit = credential_count * per_credential_cap
    for index, record in enumerate(records[:limit]):
        batches[index % credential_count].append(record)

    logger.debug(
        "split_batch: %d record(s) over %d credential(s) (cap=%d) → sizes %s",
        min(len(records), limit),
        credential_count,
        per_credential_cap,
        [len(b) for b in batches],
    )
    return batches
