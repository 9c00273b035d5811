"""
Durable job queue on Redis.

Layout per queue (prefix "cq"):
- cq:<queue>:id          job id counter
- cq:<queue>:job:<id>    job record (JSON)
- cq:<queue>:wait        list of ready job ids
- cq:<queue>:active      list of ids currently being processed
- cq:<queue>:delayed     sorted set of ids waiting for a retry (score = ready time, ms)
- cq:<queue>:completed   list of finished ids, trimmed to the retention count
- cq:<queue>:failed      list of failed ids, trimmed to the retention count
- cq:<queue>:lock:<id>   per active job lock, expires unless the owning worker renews it
- cq:<queue>:stalled-check  active ids seen without a lock on the previous check

A Worker pulls ids from `wait` into `active` and runs them on a bounded
thread pool. Failed attempts are retried with backoff until the job's
attempt budget is used up. A job whose lock expires (its worker died
mid-job) is moved back to `wait` by the next stalled check, or to `failed`
once it has stalled more than `max_stalled_count` times.

QueueFactory adds the uniform logging / error normalization wrapper and
bridges worker completion and failure onto the event bus.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import redis
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from services.bus.bus import EventBus, event
from services.queue.errors import (
    QueueJobError,
    build_error_chain,
    error_name,
    process_worker_error,
)


logger = logging.getLogger(__name__)

KEY_PREFIX = "cq"
DEFAULT_CONCURRENCY = 20
DEFAULT_RETENTION = 1000
DEFAULT_LOCK_DURATION_MS = 30000
DEFAULT_STALLED_INTERVAL = 30.0
DEFAULT_MAX_STALLED_COUNT = 1


class QueueName(str, Enum):
    ANALYZE_COMMENTS_BATCH = "analyze-comments-batch"


class StalledJobError(Exception):
    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} stalled more than the allowable limit")
        self.job_id = job_id


# -----------------------------
# Job records
# -----------------------------
@dataclass
class JobOptions:
    attempts: int = 1
    backoff_type: str = "exponential"  # exponential / fixed
    backoff_delay_ms: int = 0
    remove_on_complete: Optional[int] = None
    remove_on_fail: Optional[int] = None


@dataclass
class Job:
    id: str
    name: str
    queue_name: str
    data: Dict[str, Any]
    options: JobOptions = field(default_factory=JobOptions)
    state: str = "waiting"  # waiting / active / delayed / completed / failed
    attempts_made: int = 0
    stalled_count: int = 0
    timestamp: float = field(default_factory=time.time)
    processed_on: Optional[float] = None
    finished_on: Optional[float] = None
    return_value: Any = None
    failed_reason: Optional[str] = None
    error: Optional[Dict[str, Any]] = None

    def to_json(self) -> str:
        return json.dumps(asdict(self), default=str)

    @classmethod
    def from_json(cls, raw: str) -> "Job":
        payload = json.loads(raw)
        payload["options"] = JobOptions(**payload.get("options") or {})
        return cls(**payload)


def backoff_delay_ms(options: JobOptions, attempts_made: int) -> int:
    if options.backoff_delay_ms <= 0:
        return 0
    if options.backoff_type == "fixed":
        return options.backoff_delay_ms
    return options.backoff_delay_ms * 2 ** max(attempts_made - 1, 0)


class JobQueue:
    def __init__(
        self,
        name: str,
        connection: redis.Redis,
        prefix: str = KEY_PREFIX,
        lock_duration_ms: int = DEFAULT_LOCK_DURATION_MS,
    ):
        self.name = name
        self.connection = connection
        self.prefix = prefix
        self.lock_duration_ms = lock_duration_ms

    def _key(self, *parts: str) -> str:
        return ":".join((self.prefix, self.name, *parts))

    # -----------------------------
    # Producer side
    # -----------------------------
    def add(self, name: str, data: Dict[str, Any], options: Optional[JobOptions] = None) -> Job:
        job = Job(
            id=str(self.connection.incr(self._key("id"))),
            name=name,
            queue_name=self.name,
            data=data,
            options=options or JobOptions(),
        )
        pipe = self.connection.pipeline()
        pipe.set(self._key("job", job.id), job.to_json())
        pipe.lpush(self._key("wait"), job.id)
        pipe.execute()

        logger.info("Job added", extra={"queue": self.name, "job_id": job.id, "job_name": name})
        return job

    def add_bulk(self, jobs: List[Dict[str, Any]]) -> List[Job]:
        """Each item: {"name": ..., "data": ..., "options": JobOptions | None}."""
        return [self.add(item["name"], item["data"], item.get("options")) for item in jobs]

    def get_job(self, job_id: str) -> Optional[Job]:
        raw = self.connection.get(self._key("job", job_id))
        return Job.from_json(raw) if raw else None

    def counts(self) -> Dict[str, int]:
        return {
            "waiting": self.connection.llen(self._key("wait")),
            "active": self.connection.llen(self._key("active")),
            "delayed": self.connection.zcard(self._key("delayed")),
            "completed": self.connection.llen(self._key("completed")),
            "failed": self.connection.llen(self._key("failed")),
        }

    # -----------------------------
    # Consumer side (used by Worker)
    # -----------------------------
    def promote_delayed(self, now_ms: Optional[int] = None) -> int:
        now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
        ready = self.connection.zrangebyscore(self._key("delayed"), 0, now_ms)
        for job_id in ready:
            if self.connection.zrem(self._key("delayed"), job_id):
                self.connection.lpush(self._key("wait"), job_id)
        return len(ready)

    def fetch_next(self, timeout: Optional[float] = None) -> Optional[Job]:
        if timeout:
            job_id = self.connection.blmove(self._key("wait"), self._key("active"), timeout, "RIGHT", "LEFT")
        else:
            job_id = self.connection.lmove(self._key("wait"), self._key("active"), "RIGHT", "LEFT")
        if job_id is None:
            return None
        self.connection.set(self._key("lock", job_id), "1", px=self.lock_duration_ms)

        job = self.get_job(job_id)
        if job is None:
            # Record was pruned while the id was still queued
            pipe = self.connection.pipeline()
            pipe.lrem(self._key("active"), 1, job_id)
            pipe.delete(self._key("lock", job_id))
            pipe.execute()
            return None

        job.state = "active"
        job.processed_on = time.time()
        self._save(job)
        return job

    def mark_completed(self, job: Job, result: Any, keep: int) -> None:
        job.state = "completed"
        job.finished_on = time.time()
        job.return_value = result
        self._finish(job, "completed", keep if job.options.remove_on_complete is None else job.options.remove_on_complete)

    def mark_failed(self, job: Job, error: BaseException, keep: int) -> None:
        job.state = "failed"
        job.finished_on = time.time()
        self._record_error(job, error)
        self._finish(job, "failed", keep if job.options.remove_on_fail is None else job.options.remove_on_fail)

    def schedule_retry(self, job: Job, error: BaseException, delay_ms: int) -> None:
        job.state = "delayed"
        self._record_error(job, error)
        pipe = self.connection.pipeline()
        pipe.set(self._key("job", job.id), job.to_json())
        pipe.lrem(self._key("active"), 1, job.id)
        pipe.delete(self._key("lock", job.id))
        pipe.zadd(self._key("delayed"), {job.id: int(time.time() * 1000) + delay_ms})
        pipe.execute()

    # -----------------------------
    # Locks and stalled jobs
    # -----------------------------
    def extend_locks(self, job_ids: List[str]) -> None:
        """Renew the locks of jobs still being processed. Expired locks are not recreated."""
        if not job_ids:
            return
        pipe = self.connection.pipeline()
        for job_id in job_ids:
            pipe.pexpire(self._key("lock", job_id), self.lock_duration_ms)
        pipe.execute()

    def recover_stalled(self, max_stalled_count: int = DEFAULT_MAX_STALLED_COUNT, keep: int = DEFAULT_RETENTION):
        """
        Two-pass stalled check. Active ids found without a lock are remembered;
        if they still have no lock on the next call they are put back on `wait`,
        or failed once they have stalled more than `max_stalled_count` times.

        Returns (requeued job ids, failed jobs).
        """
        active_key = self._key("active")
        check_key = self._key("stalled-check")
        requeued: List[str] = []
        failed: List[Job] = []

        for job_id in self.connection.smembers(check_key):
            if self.connection.exists(self._key("lock", job_id)):
                continue
            if not self.connection.lrem(active_key, 1, job_id):
                continue
            job = self.get_job(job_id)
            if job is None:
                continue

            job.stalled_count += 1
            if job.stalled_count > max_stalled_count:
                job.attempts_made += 1
                self.mark_failed(job, StalledJobError(job.id), keep)
                failed.append(job)
                logger.error("Job stalled too many times", extra={"queue": self.name, "job_id": job.id})
            else:
                job.state = "waiting"
                pipe = self.connection.pipeline()
                pipe.set(self._key("job", job.id), job.to_json())
                pipe.rpush(self._key("wait"), job.id)
                pipe.execute()
                requeued.append(job.id)
                logger.warning("Stalled job moved back to wait", extra={"queue": self.name, "job_id": job.id})

        unlocked = [
            job_id
            for job_id in self.connection.lrange(active_key, 0, -1)
            if not self.connection.exists(self._key("lock", job_id))
        ]
        pipe = self.connection.pipeline()
        pipe.delete(check_key)
        if unlocked:
            pipe.sadd(check_key, *unlocked)
        pipe.execute()
        return requeued, failed

    def _record_error(self, job: Job, error: BaseException) -> None:
        job.failed_reason = str(error)
        if isinstance(error, QueueJobError):
            job.error = error.to_json()
        else:
            job.error = {"name": error_name(error), "message": str(error)}

    def _finish(self, job: Job, target: str, keep: int) -> None:
        pipe = self.connection.pipeline()
        pipe.set(self._key("job", job.id), job.to_json())
        pipe.lrem(self._key("active"), 1, job.id)
        pipe.delete(self._key("lock", job.id))
        pipe.lpush(self._key(target), job.id)
        pipe.execute()
        self._prune(target, keep)

    def _prune(self, target: str, keep: int) -> None:
        key = self._key(target)
        while self.connection.llen(key) > keep:
            job_id = self.connection.rpop(key)
            if job_id is None:
                break
            self.connection.delete(self._key("job", job_id))

    def _save(self, job: Job) -> None:
        self.connection.set(self._key("job", job.id), job.to_json())


Processor = Callable[[Job], Any]
Listener = Callable[[Job, Any], None]


class Worker:
    def __init__(
        self,
        queue: JobQueue,
        processor: Processor,
        concurrency: int = DEFAULT_CONCURRENCY,
        remove_on_complete: int = DEFAULT_RETENTION,
        remove_on_fail: int = DEFAULT_RETENTION,
        poll_interval: float = 1.0,
        stalled_interval: float = DEFAULT_STALLED_INTERVAL,
        max_stalled_count: int = DEFAULT_MAX_STALLED_COUNT,
    ):
        self.queue = queue
        self.processor = processor
        self.concurrency = concurrency
        self.remove_on_complete = remove_on_complete
        self.remove_on_fail = remove_on_fail
        self.poll_interval = poll_interval
        self.stalled_interval = stalled_interval
        self.max_stalled_count = max_stalled_count
        self.lock_renew_interval = queue.lock_duration_ms / 2000

        self._listeners: Dict[str, List[Listener]] = {"completed": [], "failed": []}
        self._slots = threading.BoundedSemaphore(concurrency)
        self._stop = threading.Event()
        self._executor: Optional[ThreadPoolExecutor] = None
        self._dispatcher: Optional[threading.Thread] = None
        self._held: set = set()
        self._held_lock = threading.Lock()
        self._last_renew = 0.0
        self._last_stalled_check = 0.0

    def on(self, event_name: str, listener: Listener) -> None:
        if event_name not in self._listeners:
            raise ValueError(f"Unknown worker event: {event_name}")
        self._listeners[event_name].append(listener)

    # -----------------------------
    # Lifecycle
    # -----------------------------
    def start(self) -> None:
        if self._dispatcher is not None:
            return
        self._stop.clear()
        self.check_stalled()
        self._executor = ThreadPoolExecutor(
            max_workers=self.concurrency,
            thread_name_prefix=f"worker-{self.queue.name}",
        )
        self._dispatcher = threading.Thread(
            target=self._run, name=f"dispatcher-{self.queue.name}", daemon=True
        )
        self._dispatcher.start()
        logger.info("Worker started", extra={"queue": self.queue.name, "concurrency": self.concurrency})

    def close(self, wait: bool = True) -> None:
        self._stop.set()
        if self._dispatcher is not None:
            # The dispatcher may still hand over a job it already fetched
            self._dispatcher.join()
            self._dispatcher = None
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None
        logger.info("Worker closed", extra={"queue": self.queue.name})

    # -----------------------------
    # Housekeeping
    # -----------------------------
    def check_stalled(self) -> None:
        self._last_stalled_check = time.monotonic()
        try:
            _, failed = self.queue.recover_stalled(self.max_stalled_count, self.remove_on_fail)
        except redis.RedisError:
            logger.exception("Stalled job check failed", extra={"queue": self.queue.name})
            return
        for job in failed:
            self._emit("failed", job, StalledJobError(job.id))

    def renew_locks(self) -> None:
        self._last_renew = time.monotonic()
        with self._held_lock:
            held = list(self._held)
        try:
            self.queue.extend_locks(held)
        except redis.RedisError:
            logger.exception("Lock renewal failed", extra={"queue": self.queue.name})

    def _housekeep(self) -> None:
        now = time.monotonic()
        if now - self._last_renew >= self.lock_renew_interval:
            self.renew_locks()
        if now - self._last_stalled_check >= self.stalled_interval:
            self.check_stalled()

    def _run(self) -> None:
        while not self._stop.is_set():
            self._housekeep()
            if not self._slots.acquire(timeout=self.poll_interval):
                continue
            try:
                self.queue.promote_delayed()
                job = self.queue.fetch_next(timeout=self.poll_interval)
            except redis.RedisError:
                logger.exception("Failed to fetch next job", extra={"queue": self.queue.name})
                self._slots.release()
                time.sleep(self.poll_interval)
                continue

            if job is None:
                self._slots.release()
                continue

            with self._held_lock:
                self._held.add(job.id)
            self._executor.submit(self._process_and_release, job)

    def _process_and_release(self, job: Job) -> None:
        try:
            self.process_job(job)
        except Exception:
            logger.exception("Unexpected worker failure", extra={"queue": self.queue.name, "job_id": job.id})
        finally:
            with self._held_lock:
                self._held.discard(job.id)
            self._slots.release()

    # -----------------------------
    # One job
    # -----------------------------
    def process_job(self, job: Job) -> None:
        try:
            result = self.processor(job)
        except Exception as e:
            job.attempts_made += 1
            if job.attempts_made < job.options.attempts:
                delay = backoff_delay_ms(job.options, job.attempts_made)
                self.queue.schedule_retry(job, e, delay)
                logger.warning(
                    "Job attempt failed, retrying",
                    extra={"queue": self.queue.name, "job_id": job.id, "attempt": job.attempts_made, "delay_ms": delay},
                )
            else:
                self.queue.mark_failed(job, e, self.remove_on_fail)
            self._emit("failed", job, e)
            return

        job.attempts_made += 1
        self.queue.mark_completed(job, result, self.remove_on_complete)
        self._emit("completed", job, result)

    def _emit(self, event_name: str, job: Job, value: Any) -> None:
        for listener in self._listeners[event_name]:
            try:
                listener(job, value)
            except Exception:
                logger.exception("Worker listener failed", extra={"event": event_name, "job_id": job.id})


# -----------------------------
# Bus events
# -----------------------------
class _Payload(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


class JobCompletedPayload(_Payload):
    job_id: str
    queue_name: str
    result: Any = None


class JobFailedPayload(_Payload):
    job_id: str
    queue_name: str
    error: str
    error_context: Dict[str, Any]
    will_retry: bool = False


JobCompleted = event("job.completed", JobCompletedPayload)
JobFailed = event("job.failed", JobFailedPayload)


class QueueFactory:
    def __init__(self, connection: redis.Redis, bus: EventBus, lock_duration_ms: int = DEFAULT_LOCK_DURATION_MS):
        self.connection = connection
        self.bus = bus
        self.lock_duration_ms = lock_duration_ms
        self._queues: Dict[str, JobQueue] = {}
        self._workers: List[Worker] = []

    def create_queue(self, name: str) -> JobQueue:
        if name not in self._queues:
            self._queues[name] = JobQueue(name, self.connection, lock_duration_ms=self.lock_duration_ms)
        return self._queues[name]

    def create_worker(
        self,
        name: str,
        processor: Processor,
        concurrency: int = DEFAULT_CONCURRENCY,
        remove_on_complete: int = DEFAULT_RETENTION,
        remove_on_fail: int = DEFAULT_RETENTION,
        **options: Any,
    ) -> Worker:
        worker = Worker(
            self.create_queue(name),
            self._wrap(name, processor),
            concurrency=concurrency,
            remove_on_complete=remove_on_complete,
            remove_on_fail=remove_on_fail,
            **options,
        )
        worker.on("completed", self._on_completed)
        worker.on("failed", self._on_failed)
        self._workers.append(worker)
        return worker

    def close(self) -> None:
        for worker in self._workers:
            worker.close()
        self._workers.clear()

    # -----------------------------
    # Processor wrapper
    # -----------------------------
    def _wrap(self, queue_name: str, processor: Processor) -> Processor:
        def wrapped(job: Job) -> Any:
            start = time.time()
            logger.info(
                "Job started",
                extra={"queue": queue_name, "job_id": job.id, "job_name": job.name, "attempt": job.attempts_made + 1},
            )

            try:
                result = processor(job)
            except Exception as e:
                duration_ms = int((time.time() - start) * 1000)
                context = {
                    "jobId": job.id,
                    "jobName": job.name,
                    "queueName": queue_name,
                    "attemptsMade": job.attempts_made,
                    "duration": duration_ms,
                }

                prepared = getattr(e, "worker_error_result", None)
                original = getattr(e, "original_error", e)
                if prepared is not None:
                    chain = prepared.error_chain
                    context = {**prepared.context, **context}
                else:
                    chain = process_worker_error(e, context, source=queue_name).error_chain

                raise QueueJobError(
                    name=error_name(original),
                    message=str(original),
                    error_chain=chain,
                    context=context,
                    duration_ms=duration_ms,
                    job_id=job.id,
                ) from e

            logger.info(
                "Job completed",
                extra={"queue": queue_name, "job_id": job.id, "duration_ms": int((time.time() - start) * 1000)},
            )
            return result

        return wrapped

    # -----------------------------
    # Worker listeners -> bus
    # -----------------------------
    def _on_completed(self, job: Job, result: Any) -> None:
        self.bus.publish(JobCompleted, {"jobId": job.id, "queueName": job.queue_name, "result": result})

    def _on_failed(self, job: Job, error: BaseException) -> None:
        chain = error.error_chain if isinstance(error, QueueJobError) else build_error_chain(error)
        original = error.__cause__ if isinstance(error, QueueJobError) and error.__cause__ else error
        original = getattr(original, "original_error", original)

        self.bus.publish(
            JobFailed,
            {
                "jobId": job.id,
                "queueName": job.queue_name,
                "error": str(error),
                "willRetry": job.state == "delayed",
                "errorContext": {
                    "errorType": error_name(original),
                    "errorMessage": str(original),
                    "errorStack": chain[0]["stack"] if chain else None,
                    "errorChain": chain,
                    "rootCause": chain[-1] if chain else None,
                    "jobData": job.data,
                    "attemptsMade": job.attempts_made,
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                },
            },
        )
