"""Claim protocol: pick the next eligible job and mark it processing.

The algorithm is storage-agnostic. A store provides a candidate query and
a conditional "pending -> processing" update that reports whether it
changed the row; both run inside one serializable unit of work owned by
the caller. When the update changes nothing another worker won the race,
and selection is simply repeated.
"""

import logging
from datetime import datetime
from typing import Optional, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class ClaimStore(Protocol):
    """Storage operations the claim protocol needs."""

    def select_candidate(self, now: datetime) -> Optional[str]:
        """Id of the highest-priority, oldest pending job with ``run_at`` unset or <= now."""
        ...

    def mark_processing(self, job_id: str, worker_id: str, now: datetime) -> bool:
        """Move the job to processing only if it is still pending; True if it changed."""
        ...


def claim_next(store: ClaimStore, worker_id: str, now: datetime) -> Optional[str]:
    """Claim one job for ``worker_id``.

    Args:
        store: Store bound to the current unit of work.
        worker_id: Claiming worker.
        now: Eligibility cut-off for ``run_at``.

    Returns:
        The claimed job id, or None when nothing is eligible.
    """
    while True:
        job_id = store.select_candidate(now)
        if job_id is None:
            return None
        if store.mark_processing(job_id, worker_id, now):
            return job_id
        logger.debug("Job %s claimed by another worker, reselecting", job_id)
