"""Eviction of finished jobs and their artifacts.

Two policies exist and exactly one is active per server:

``timer`` (default)
    When a job completes, a timer is armed on the event loop.  When it
    fires, the artifact file is deleted (best effort) and the job record is
    removed.  Downloads do not evict anything, so a client may download the
    same image repeatedly until the retention window closes.

``deliver_once``
    Nothing is armed on completion.  The first successful download deletes
    the job record and the artifact immediately, so a second download (or a
    late status poll) gets 404.

Failed jobs have no artifact and can never be delivered, so under both
policies their record is evicted by a timer once the retention window has
passed.

The policies are never combined: a timer racing a delivery would be
harmless for the file (deletion is idempotent) but would make the job
record disappear from under a legitimate late poller in surprising ways.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Literal

from fluxserve.core.job_store import JobStore

logger = logging.getLogger(__name__)

RetentionPolicy = Literal["timer", "deliver_once"]


class RetentionManager:
    """Applies the configured retention policy to finished jobs.

    Args:
        store: Job store to evict records from.
        policy: ``"timer"`` or ``"deliver_once"``.
        delay_seconds: Retention window for eviction timers.
    """

    def __init__(self, store: JobStore, policy: RetentionPolicy, delay_seconds: float) -> None:
        if policy not in ("timer", "deliver_once"):
            raise ValueError(f"Unknown retention policy: {policy}")

        self._store = store
        self._policy = policy
        self._delay = delay_seconds
        self._timers: dict[str, asyncio.TimerHandle] = {}

    @property
    def policy(self) -> RetentionPolicy:
        return self._policy

    @property
    def pending(self) -> int:
        """Number of armed, not yet fired, eviction timers."""
        return len(self._timers)

    def on_completed(self, job_id: str, artifact: Path) -> None:
        """Arm the eviction timer (``timer`` policy only).

        Must be called from the event loop thread.
        """
        if self._policy != "timer":
            return
        self._arm(job_id, artifact)

    def on_failed(self, job_id: str) -> None:
        """Arm the eviction timer for a failed job (both policies).

        Must be called from the event loop thread.
        """
        self._arm(job_id, None)

    def on_delivered(self, job_id: str, artifact: Path) -> None:
        """Evict right after delivery (``deliver_once`` policy only)."""
        if self._policy != "deliver_once":
            return
        self.evict(job_id, artifact)

    def evict(self, job_id: str, artifact: Path | None) -> None:
        """Delete the artifact (best effort), then the job record."""
        if artifact is not None:
            self._delete_artifact(job_id, artifact)

        if self._store.delete(job_id):
            logger.info("Evicted job %s.", job_id)

    def _delete_artifact(self, job_id: str, artifact: Path) -> None:
        try:
            artifact.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Could not delete artifact %s for job %s: %s", artifact, job_id, exc)

    def cancel_all(self) -> None:
        """Cancel every pending eviction timer (used on shutdown)."""
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()

    def _arm(self, job_id: str, artifact: Path | None) -> None:
        loop = asyncio.get_running_loop()
        previous = self._timers.pop(job_id, None)
        if previous is not None:
            previous.cancel()

        self._timers[job_id] = loop.call_later(self._delay, self._expire, job_id, artifact)
        logger.info("Job %s will be evicted in %.0f seconds.", job_id, self._delay)

    def _expire(self, job_id: str, artifact: Path | None) -> None:
        self._timers.pop(job_id, None)
        self.evict(job_id, artifact)
