"""Main worker orchestration for the tenant migration engine.

This module contains the core worker logic that:
1. Consumes job messages from one Kafka topic per workload queue
2. Runs each job through the JobRunner, bounded per queue
3. Produces progress, results and errors to their topics
4. Applies pause/cancel/resume requests from the control topic
"""

import asyncio
import json
import logging
import signal
import sys
import time
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set, Tuple

import pydantic
import structlog
from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from aiokafka.structs import ConsumerRecord, TopicPartition

from .client.auth import CredentialResolver
from .client.storage import BackupStorage, S3BackupStorage
from .config import Settings
from .health import HealthServer
from .runner import JobRunner
from .schemas.job import parse_job_message
from .schemas.results import JobProgress
from .state import JobStatus
from .store import InMemoryJobStore, JobStore
from .utils.errors import (
    MigrationError,
    RetriableError,
    TerminalError,
    ValidationError,
)

CONTROL_ACTIONS = {
    "pause": JobStatus.PAUSED,
    "cancel": JobStatus.CANCELLED,
    "resume": JobStatus.RUNNING,
}

REQUEUE_HEADER = "requeue-count"


class OffsetTracker:
    """Track in-flight messages and compute safe commit offsets.

    Jobs finish out of order, so a partition is committed only up to the
    lowest offset that is still in flight.
    """

    def __init__(self):
        self._in_flight: Dict[TopicPartition, Set[int]] = defaultdict(set)
        self._done: Dict[TopicPartition, Set[int]] = defaultdict(set)
        self._committed: Dict[TopicPartition, int] = {}

    def track(self, tp: TopicPartition, offset: int) -> None:
        self._in_flight[tp].add(offset)

    def complete(self, tp: TopicPartition, offset: int) -> Optional[int]:
        """Mark an offset done; return the new commit offset, if it moved."""
        self._in_flight[tp].discard(offset)
        self._done[tp].add(offset)

        in_flight = self._in_flight[tp]
        floor = min(in_flight) if in_flight else None
        ready = {o for o in self._done[tp] if floor is None or o < floor}
        if not ready:
            return None
        self._done[tp] -= ready

        commit = max(ready) + 1
        if commit <= self._committed.get(tp, -1):
            return None
        self._committed[tp] = commit
        return commit

    @property
    def in_flight(self) -> int:
        return sum(len(offsets) for offsets in self._in_flight.values())


class TenantMigrationWorker:
    """Main worker orchestration for migration and backup jobs.

    Manages Kafka consumption, per-queue concurrency, job execution and
    event production.
    """

    def __init__(
        self,
        settings: Settings,
        store: Optional[JobStore] = None,
        storage: Optional[BackupStorage] = None,
        credentials: Optional[CredentialResolver] = None,
    ):
        """Initialize the worker.

        Args:
            settings: Application settings
            store: Job/checkpoint store (in-memory when omitted)
            storage: Backup storage (S3 from settings when omitted)
            credentials: Credential resolver (client credentials from settings
                when omitted)
        """
        self.settings = settings
        self.logger = self._setup_logger()
        self.running = False
        self.shutdown_event = asyncio.Event()

        # Kafka clients (initialized in start)
        self.consumer: Optional[AIOKafkaConsumer] = None
        self.producer: Optional[AIOKafkaProducer] = None

        self.store = store or InMemoryJobStore()
        self.storage = storage or S3BackupStorage.from_config(settings.storage)
        self.credentials = credentials or CredentialResolver(settings.azure, settings.graph)
        self.runner = JobRunner(
            store=self.store,
            credentials=self.credentials,
            storage=self.storage,
            graph_config=settings.graph,
            publish_progress=self._produce_progress,
            max_recorded_errors=settings.worker.max_recorded_errors,
        )

        # Concurrency control: one semaphore per enabled queue
        worker_config = settings.worker
        self.queue_limits: Dict[str, int] = {
            getattr(worker_config, f"{name}_topic"): getattr(worker_config, f"{name}_concurrency")
            for name in worker_config.enabled_queues
        }
        self.queues: Dict[str, asyncio.Semaphore] = {
            topic: asyncio.Semaphore(limit) for topic, limit in self.queue_limits.items()
        }
        self.max_backlog = sum(self.queue_limits.values()) * 2
        self.active_jobs: Dict[str, str] = {}
        # Messages of paused jobs, re-published on resume: (topic, key, value)
        self.parked_jobs: Dict[str, Tuple[str, Any, Dict[str, Any]]] = {}
        self.tasks: Set[asyncio.Task] = set()
        self.offsets = OffsetTracker()
        self._commit_lock = asyncio.Lock()
        self._paused = False

        self.health_server = HealthServer(
            self,
            host=worker_config.health_host,
            port=worker_config.health_port,
        )

        self.metrics = {
            # Counters
            "messages_processed": 0,
            "messages_failed": 0,
            "jobs_completed": 0,
            "jobs_failed": 0,
            "jobs_interrupted": 0,
            "jobs_requeued": 0,
            "jobs_resumed": 0,
            "control_messages": 0,
            "progress_produced": 0,
            "errors_produced": 0,
            "errors_retriable": 0,
            "errors_terminal": 0,

            # Gauges
            "processing_time_seconds": 0.0,
        }

    def _setup_logger(self) -> structlog.BoundLogger:
        """Setup structured logging."""
        logging.basicConfig(
            format="%(message)s",
            stream=sys.stdout,
            level=getattr(logging, self.settings.logging.level.upper(), logging.INFO),
        )

        structlog.configure(
            processors=[
                structlog.stdlib.filter_by_level,
                structlog.stdlib.add_logger_name,
                structlog.stdlib.add_log_level,
                structlog.stdlib.PositionalArgumentsFormatter(),
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.processors.UnicodeDecoder(),
                structlog.processors.JSONRenderer() if self.settings.logging.format == "json"
                else structlog.dev.ConsoleRenderer(),
            ],
            context_class=dict,
            logger_factory=structlog.stdlib.LoggerFactory(),
            cache_logger_on_first_use=True,
        )

        return structlog.get_logger().bind(
            service=self.settings.service_name,
            version=self.settings.service_version,
            environment=self.settings.environment,
        )

    @property
    def topics(self) -> List[str]:
        return list(self.queues) + [self.settings.worker.control_topic]

    async def start(self) -> None:
        """Start the worker and begin processing messages."""
        self.logger.info("Starting tenant migration worker", topics=self.topics)
        self.running = True

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._handle_shutdown_signal, sig)

        try:
            await self.health_server.start()
            await self._init_kafka_clients()

            await self.consumer.start()
            self.logger.info("Kafka consumer started")

            await self.producer.start()
            self.logger.info("Kafka producer started")

            await self._process_messages()

        except Exception as e:
            self.logger.error("Worker failed", error=str(e), exc_info=True)
            raise
        finally:
            await self.stop()

    async def stop(self) -> None:
        """Stop the worker gracefully."""
        if not self.running and self.consumer is None and self.producer is None:
            return
        self.logger.info("Stopping tenant migration worker")
        self.running = False

        # Wait for active jobs; they stop at their next page boundary
        if self.tasks:
            self.logger.info("Waiting for active jobs", count=len(self.tasks))
            _, pending = await asyncio.wait(
                self.tasks, timeout=self.settings.worker.shutdown_grace_seconds
            )
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        if self.consumer:
            await self.consumer.stop()
            self.consumer = None
            self.logger.info("Kafka consumer stopped")

        if self.producer:
            await self.producer.stop()
            self.producer = None
            self.logger.info("Kafka producer stopped")

        await self.storage.close()
        await self.health_server.stop()

        self.logger.info("Worker stopped", metrics=self.metrics)

    async def _init_kafka_clients(self) -> None:
        """Initialize Kafka consumer and producer."""
        kafka = self.settings.kafka

        self.consumer = AIOKafkaConsumer(
            *self.topics,
            bootstrap_servers=kafka.bootstrap_servers,
            group_id=kafka.consumer_group_id,
            client_id=f"{self.settings.service_name}-consumer",
            auto_offset_reset=kafka.auto_offset_reset,
            enable_auto_commit=kafka.enable_auto_commit,
            max_poll_records=kafka.max_poll_records,
            session_timeout_ms=kafka.session_timeout_ms,
            heartbeat_interval_ms=kafka.heartbeat_interval_ms,
            max_poll_interval_ms=kafka.max_poll_interval_ms,
            value_deserializer=lambda v: json.loads(v.decode("utf-8")),
            key_deserializer=lambda k: k.decode("utf-8") if k else None,
        )

        self.producer = AIOKafkaProducer(
            bootstrap_servers=kafka.bootstrap_servers,
            client_id=f"{self.settings.service_name}-producer",
            acks="all" if kafka.producer_acks == "all" else int(kafka.producer_acks),
            value_serializer=lambda v: json.dumps(v, default=str).encode("utf-8"),
            key_serializer=lambda k: k.encode("utf-8") if k else None,
        )

    async def _process_messages(self) -> None:
        """Main message processing loop."""
        self.logger.info("Starting message processing loop")

        while self.running:
            try:
                batches = await self.consumer.getmany(timeout_ms=1000)
                for tp, records in batches.items():
                    for record in records:
                        await self._dispatch(tp, record)
                self._apply_backpressure()

            except asyncio.CancelledError:
                self.logger.info("Processing loop cancelled")
                break
            except Exception as e:
                self.logger.error(
                    "Error in processing loop",
                    error=str(e),
                    exc_info=True,
                )
                await asyncio.sleep(1)  # Backoff on error

    def _apply_backpressure(self) -> None:
        """Pause fetching while too many jobs are waiting for a slot."""
        assignment = self.consumer.assignment()
        if not self._paused and len(self.tasks) >= self.max_backlog:
            self.consumer.pause(*assignment)
            self._paused = True
            self.logger.info("Consumer paused", backlog=len(self.tasks))
        elif self._paused and len(self.tasks) < self.max_backlog // 2:
            self.consumer.resume(*assignment)
            self._paused = False
            self.logger.info("Consumer resumed", backlog=len(self.tasks))

    async def _dispatch(self, tp: TopicPartition, record: ConsumerRecord) -> None:
        """Route one record to the control handler or a job task."""
        self.offsets.track(tp, record.offset)

        if record.topic == self.settings.worker.control_topic:
            try:
                await self._handle_control(record.value)
            except MigrationError as e:
                self.logger.warning("Control message rejected", error=e.message, value=record.value)
            await self._complete(tp, record.offset)
            return

        semaphore = self.queues.get(record.topic)
        if semaphore is None:
            self.logger.warning("Message from unknown topic", topic=record.topic)
            await self._complete(tp, record.offset)
            return

        task = asyncio.create_task(self._run_job(tp, record, semaphore))
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)

    async def _run_job(self, tp: TopicPartition, record: ConsumerRecord, semaphore: asyncio.Semaphore) -> None:
        try:
            async with semaphore:
                await self._handle_message(record)
                self.metrics["messages_processed"] += 1
        except Exception as e:
            self.metrics["messages_failed"] += 1
            self.logger.error(
                "Failed to process message",
                error=str(e),
                topic=record.topic,
                offset=record.offset,
                exc_info=True,
            )
        finally:
            await self._complete(tp, record.offset)

    async def _complete(self, tp: TopicPartition, offset: int) -> None:
        """Commit the partition up to the lowest in-flight offset."""
        async with self._commit_lock:
            commit = self.offsets.complete(tp, offset)
            if commit is not None and self.consumer is not None:
                await self.consumer.commit({tp: commit})

    async def _handle_control(self, value: Dict[str, Any]) -> None:
        """Apply a pause/cancel/resume request to the job store."""
        self.metrics["control_messages"] += 1
        job_id = value.get("job_id")
        action = str(value.get("action", "")).lower()
        if not job_id or action not in CONTROL_ACTIONS:
            raise ValidationError(f"Invalid control message: action={action!r}", field="action")

        await self.store.transition(job_id, CONTROL_ACTIONS[action], actor="api")
        self.logger.info("Control request applied", job_id=job_id, action=action)
        if action == "resume":
            await self._resume(job_id)
        elif action == "cancel":
            self.parked_jobs.pop(job_id, None)

    async def _resume(self, job_id: str) -> None:
        """Re-publish a paused job's message so a queue slot runs it again."""
        parked = self.parked_jobs.pop(job_id, None)
        if parked is None:
            self.logger.info("No parked message for resumed job", job_id=job_id)
            return
        topic, key, value = parked
        await self.producer.send_and_wait(topic, value=value, key=key)
        self.metrics["jobs_resumed"] += 1
        self.logger.info("Resumed job re-enqueued", job_id=job_id, topic=topic)

    async def _handle_message(self, record: ConsumerRecord) -> None:
        """Run one job message and report its outcome.

        Args:
            record: Kafka record carrying the job message
        """
        start_time = time.time()
        value = record.value or {}
        job_id = value.get("job_id", "unknown")
        self.logger.info(
            "Handling job message",
            topic=record.topic,
            job_id=job_id,
            offset=record.offset,
        )

        try:
            try:
                job = parse_job_message(value)
            except pydantic.ValidationError as e:
                raise ValidationError(f"Invalid job message: {e.error_count()} errors")

            self.active_jobs[job.job_id] = record.topic
            try:
                result = await self.runner.run(job)
            finally:
                self.active_jobs.pop(job.job_id, None)

            if result.interrupted:
                self.metrics["jobs_interrupted"] += 1
            elif result.status == JobStatus.COMPLETED:
                self.metrics["jobs_completed"] += 1
            else:
                self.metrics["jobs_failed"] += 1

            await self._produce(self.settings.worker.results_topic, job.job_id, result.summary())

            if result.interrupted and result.status == JobStatus.PAUSED:
                self.parked_jobs[job.job_id] = (record.topic, record.key, value)
                # Resumed while the run was still winding down
                if await self.store.get_status(job.job_id) == JobStatus.RUNNING:
                    await self._resume(job.job_id)
            else:
                self.parked_jobs.pop(job.job_id, None)

            self.logger.info(
                "Job message processed",
                job_id=job.job_id,
                status=result.status.value,
                processed=result.processed,
                failed=result.failed,
                processing_time_seconds=time.time() - start_time,
            )

        except RetriableError as e:
            self.logger.warning(
                "Retriable error occurred, re-enqueueing job",
                error=str(e),
                job_id=job_id,
                retry_after=getattr(e, "retry_after", None),
            )
            self.metrics["errors_retriable"] += 1
            await self._produce_error(e, value, job_id, retriable=True)
            await self._requeue(record)

        except TerminalError as e:
            self.logger.error(
                "Terminal error occurred",
                error=str(e),
                job_id=job_id,
            )
            self.metrics["errors_terminal"] += 1
            self.metrics["jobs_failed"] += 1
            await self._produce_error(e, value, job_id, retriable=False)

        except Exception as e:
            # Unexpected error - treat as terminal
            self.logger.exception(
                "Unexpected error occurred",
                error=str(e),
                job_id=job_id,
            )
            self.metrics["errors_terminal"] += 1
            await self._produce_error(e, value, job_id, retriable=False)

        finally:
            self.metrics["processing_time_seconds"] += time.time() - start_time

    async def _requeue(self, record: ConsumerRecord) -> None:
        """Publish the job again so another slot picks it up."""
        headers = dict(record.headers or ())
        count = int(headers.get(REQUEUE_HEADER, b"0").decode() or 0)
        if count >= self.settings.worker.max_requeues:
            self.logger.error("Requeue limit reached", job_id=(record.value or {}).get("job_id"), count=count)
            return
        headers[REQUEUE_HEADER] = str(count + 1).encode()
        await self.producer.send_and_wait(
            record.topic,
            value=record.value,
            key=record.key,
            headers=list(headers.items()),
        )
        self.metrics["jobs_requeued"] += 1

    async def _produce(self, topic: str, key: str, value: Dict[str, Any]) -> None:
        await self.producer.send_and_wait(topic, value=value, key=key)
        self.logger.debug("message_produced_to_kafka", topic=topic, key=key)

    async def _produce_progress(self, progress: JobProgress) -> None:
        """Publish a progress checkpoint."""
        if self.producer is None:
            return
        await self._produce(
            self.settings.worker.progress_topic,
            progress.job_id,
            progress.model_dump(mode="json"),
        )
        self.metrics["progress_produced"] += 1

    async def _produce_error(
        self,
        error: Exception,
        original_message: Dict[str, Any],
        job_id: str,
        retriable: Optional[bool] = None,
    ) -> None:
        """Produce an error event for a job message.

        Args:
            error: The error that occurred
            original_message: Original job message
            job_id: Job ID
            retriable: Whether error is retriable (None = auto-detect)
        """
        if retriable is None:
            retriable = isinstance(error, RetriableError)

        error_record = {
            "job_id": job_id,
            "organization_id": original_message.get("organization_id"),
            "error": {
                "type": type(error).__name__,
                "message": str(error),
                "retriable": retriable,
            },
            "original_message": original_message,
            "occurred_at": datetime.now(timezone.utc).isoformat(),
        }

        if isinstance(error, MigrationError):
            error_record["error"].update(error.to_dict())

        await self._produce(self.settings.worker.errors_topic, job_id, error_record)
        self.metrics["errors_produced"] += 1

    def _handle_shutdown_signal(self, signum: int) -> None:
        """Handle shutdown signals gracefully."""
        self.logger.info("Received shutdown signal", signal=signum)
        self.running = False
        self.shutdown_event.set()
