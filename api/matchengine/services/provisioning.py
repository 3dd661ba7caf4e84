"""
Chat provisioning for matched groups.

Jobs run on a background thread pool so commits and overrides never wait on
the chat service. A job is retried with escalating backoff and, once out of
attempts, logged as failed; matching state is never rolled back.
"""

import logging
import threading
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

import requests

from matchengine.errors import ProvisioningFailed

logger = logging.getLogger(__name__)


@dataclass
class ProvisioningJob:
    group_id: str
    event_id: str
    member_user_ids: list[str]
    attempts: int = 0
    status: str = "pending"
    last_error: str | None = None
    history: list[str] = field(default_factory=list)

    def payload(self) -> dict[str, Any]:
        return {"group_id": self.group_id, "event_id": self.event_id, "member_user_ids": list(self.member_user_ids)}


class LoggingChatProvisioner:
    """Used when no chat service is configured."""

    def provision(self, payload: dict[str, Any]) -> None:
        logger.info(
            "[PROVISION] no chat provisioner configured; group=%s members=%s",
            payload.get("group_id"),
            len(payload.get("member_user_ids") or []),
        )


class HttpChatProvisioner:
    def __init__(self, url: str, timeout_seconds: float = 5.0, session: requests.Session | None = None):
        self.url = url
        self.timeout_seconds = timeout_seconds
        self.session = session or requests.Session()

    def provision(self, payload: dict[str, Any]) -> None:
        response = self.session.post(self.url, json=payload, timeout=self.timeout_seconds)
        response.raise_for_status()


def build_chat_provisioner(url: str | None, timeout_seconds: float = 5.0):
    if url:
        return HttpChatProvisioner(url, timeout_seconds)
    return LoggingChatProvisioner()


def _timer_schedule(delay: float, callback: Callable[[], None]) -> None:
    timer = threading.Timer(delay, callback)
    timer.daemon = True
    timer.start()


class ProvisioningDispatcher:
    """
    Retries are parked on a timer and re-submitted once the backoff elapses,
    so a worker thread is only ever busy for the length of one attempt.
    ``jobs`` keeps the most recent ``history_limit`` jobs for inspection.
    """

    def __init__(
        self,
        provisioner,
        *,
        max_attempts: int = 6,
        backoff_seconds: Iterable[float] = (2, 5, 15, 30, 60, 180),
        workers: int = 2,
        history_limit: int = 1000,
        schedule: Callable[[float, Callable[[], None]], None] = _timer_schedule,
    ):
        self.provisioner = provisioner
        self.max_attempts = max(1, int(max_attempts))
        self.backoff_seconds = [float(s) for s in backoff_seconds] or [0.0]
        self._schedule = schedule
        self._executor = ThreadPoolExecutor(max_workers=max(1, int(workers)), thread_name_prefix="provisioning")
        self._lock = threading.RLock()
        self._idle = threading.Condition(self._lock)
        self._futures: set[Future] = set()
        self._pending = 0
        self._closed = False
        self.jobs: deque[ProvisioningJob] = deque(maxlen=max(1, int(history_limit)))

    def _delay_for(self, attempts: int) -> float:
        return self.backoff_seconds[min(attempts - 1, len(self.backoff_seconds) - 1)]

    def enqueue(self, event_id: str, groups: Iterable[Any]) -> list[ProvisioningJob]:
        """Schedule one job per group. ``groups`` holds ``MatchingGroup`` instances."""
        jobs = [ProvisioningJob(group_id=g.id, event_id=event_id, member_user_ids=list(g.member_ids)) for g in groups]
        with self._lock:
            self.jobs.extend(jobs)
            self._pending += len(jobs)
        for job in jobs:
            self._submit(job)
        return jobs

    def _submit(self, job: ProvisioningJob) -> None:
        with self._lock:
            if self._closed:
                job.last_error = job.last_error or "dispatcher shut down"
                self._give_up(job)
                return
            future = self._executor.submit(self._attempt, job)
            self._futures.add(future)
        future.add_done_callback(self._forget)

    def _forget(self, future: Future) -> None:
        with self._lock:
            self._futures.discard(future)
            self._idle.notify_all()

    def _finish(self) -> None:
        with self._lock:
            self._pending -= 1
            self._idle.notify_all()

    def _attempt(self, job: ProvisioningJob) -> None:
        job.attempts += 1
        try:
            self.provisioner.provision(job.payload())
        except Exception as exc:
            job.last_error = str(exc)[:1000]
            job.history.append(job.last_error)
            if job.attempts >= self.max_attempts:
                self._give_up(job)
                return
            delay = self._delay_for(job.attempts)
            logger.warning(
                "[PROVISION] group=%s attempt=%s failed: %s; retrying in %ss",
                job.group_id,
                job.attempts,
                job.last_error,
                delay,
            )
            self._schedule(delay, lambda: self._submit(job))
            return
        job.status = "sent"
        job.last_error = None
        logger.info("[PROVISION] group=%s provisioned after %s attempt(s)", job.group_id, job.attempts)
        self._finish()

    def _give_up(self, job: ProvisioningJob) -> None:
        job.status = "failed"
        failure = ProvisioningFailed(
            f"Chat provisioning for group {job.group_id} gave up",
            {"group_id": job.group_id, "event_id": job.event_id, "attempts": job.attempts},
        )
        logger.error("[PROVISION] %s: %s (last_error=%s)", failure.code, failure.message, job.last_error)
        self._finish()

    def drain(self, timeout: float | None = None) -> bool:
        """Wait until every job, including parked retries, is sent or failed. False on timeout."""
        with self._idle:
            return self._idle.wait_for(lambda: self._pending == 0 and not self._futures, timeout=timeout)

    def shutdown(self, wait: bool = True) -> None:
        """Parked retries that fire after shutdown are marked failed."""
        with self._lock:
            self._closed = True
        self._executor.shutdown(wait=wait)
