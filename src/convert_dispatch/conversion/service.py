import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..logging_config import get_logger
from .capabilities import CapabilityTable, normalize_format
from .errors import DispatchError, NotFoundError, StorageError, ValidationError
from .interfaces import ChunkReader, ConversionBackend, JobPaths, StorageGateway
from .jobs import Job, JobStatus, JobStore
from .resolver import EngineResolver, Invalid

logger = get_logger(name=__name__)

SHUTDOWN_MESSAGE = "interrupted by shutdown"


@dataclass(frozen=True)
class Submission:
    job: Job
    paths: JobPaths


def source_format_of(filename: str) -> str:
    """Lowercase extension after the last dot of the base name, or ''."""
    return normalize_format(Path(filename.replace("\\", "/")).suffix)


class Dispatcher:
    """Orchestrates conversion jobs from submission to a terminal state.

    Submissions are validated against the capability table, recorded in the
    job store, and queued. A fixed pool of worker tasks executes them against
    the external conversion backend, one attempt per job. The dispatcher is
    framework-agnostic; the HTTP layer only calls its public methods.
    """

    def __init__(
        self,
        capabilities: CapabilityTable,
        store: JobStore,
        storage: StorageGateway,
        backend: ConversionBackend,
        *,
        workers: int = 4,
        max_upload_bytes: int = 500 * 1024 * 1024,
    ) -> None:
        self._capabilities = capabilities
        self._resolver = EngineResolver(capabilities)
        self._store = store
        self._storage = storage
        self._backend = backend
        self._workers = workers
        self._max_upload_bytes = max_upload_bytes
        self._queue: asyncio.Queue[str] | None = None
        self._tasks: list[asyncio.Task] = []

    @property
    def capabilities(self) -> CapabilityTable:
        return self._capabilities

    @property
    def resolver(self) -> EngineResolver:
        return self._resolver

    @property
    def store(self) -> JobStore:
        return self._store

    @property
    def backend(self) -> ConversionBackend:
        return self._backend

    @property
    def queue(self) -> asyncio.Queue[str]:
        # Created lazily so it binds to the loop that runs the workers.
        if self._queue is None:
            self._queue = asyncio.Queue()
        return self._queue

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    async def start(self) -> None:
        if self._tasks:
            return
        for i in range(self._workers):
            task = asyncio.create_task(self._worker_loop(f"worker-{i+1}"))
            self._tasks.append(task)
        logger.info("Started {} conversion workers", self._workers)

    async def stop(self, *, grace: float = 0.0) -> None:
        """Stop the workers.

        Waits up to `grace` seconds for queued jobs to finish, then cancels the
        workers. Jobs that never ran and jobs cut off mid-execution end Failed.
        """
        if grace > 0 and self._tasks:
            try:
                await asyncio.wait_for(self.queue.join(), timeout=grace)
            except asyncio.TimeoutError:
                logger.warning("Shutdown grace period of {}s elapsed with jobs outstanding", grace)
        for t in self._tasks:
            t.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        abandoned = 0
        while not self.queue.empty():
            job_id = self.queue.get_nowait()
            self.queue.task_done()
            if self._store.fail(job_id, SHUTDOWN_MESSAGE) is not None:
                abandoned += 1
        if abandoned:
            logger.warning("Marked {} queued jobs as failed on shutdown", abandoned)
        self._queue = None
        logger.info("Conversion workers stopped")

    # API used by the HTTP controller

    async def submit(
        self,
        owner: str,
        filename: str,
        target_format: str,
        *,
        reader: ChunkReader,
        options: dict[str, Any] | None = None,
        engine: str | None = None,
    ) -> Submission:
        """Validate, record and persist a conversion request, then queue it.

        Raises ValidationError when no engine can serve the request and
        StorageError / UploadTooLargeError when the upload cannot be stored;
        in both cases no job remains in the store.
        """
        if not owner:
            raise ValidationError("caller identity is required")
        source = source_format_of(filename)
        if not source:
            raise ValidationError(f"cannot determine format from filename '{filename}'")
        target = normalize_format(target_format or "")
        if not target:
            raise ValidationError("target format is required")

        resolution = self._resolver.resolve(source, target, engine or None)
        if isinstance(resolution, Invalid):
            logger.info("Rejected {} -> {} for {}: {}", source, target, owner, resolution.reason)
            raise ValidationError(resolution.reason, resolution.suggestions)

        job = self._store.create(owner, filename, source, target, resolution.engine_id, options)
        try:
            paths = self._storage.paths_for(owner, job.id, filename)
            size = await self._storage.save_upload(paths, reader, max_bytes=self._max_upload_bytes)
        except Exception:
            self._store.discard(job.id)
            self._remove_files(job)
            raise
        logger.debug("Stored {} bytes for job {} at {}", size, job.id, paths.input_path)

        await self.queue.put(job.id)
        return Submission(job=job, paths=paths)

    def get_owned(self, job_id: str, owner: str) -> Job | None:
        return self._store.get_owned(job_id, owner)

    def require_owned(self, job_id: str, owner: str) -> Job:
        """Like get_owned, but raises NotFoundError for unknown or foreign jobs."""
        job = self._store.get_owned(job_id, owner)
        if job is None:
            raise NotFoundError(job_id)
        return job

    def list_owned(self, owner: str) -> list[Job]:
        return self._store.list_owned(owner)

    def delete(self, job_id: str, owner: str) -> bool:
        job = self._store.get_owned(job_id, owner)
        if job is None or not self._store.delete(job_id, owner):
            return False
        self._remove_files(job)
        return True

    def paths_for(self, job: Job) -> JobPaths:
        return self._storage.paths_for(job.owner, job.id, job.original_filename)

    def result_path(self, job_id: str, owner: str) -> Path | None:
        job = self._store.get_owned(job_id, owner)
        if job is None or job.status is not JobStatus.COMPLETED or not job.output_filename:
            return None
        return self.paths_for(job).output_dir / job.output_filename

    def _remove_files(self, job: Job) -> int:
        try:
            return self._storage.remove_job_files(job.owner, job.id)
        except StorageError as e:
            logger.error("Could not remove files of job {}: {}", job.id, e)
            return 0

    # Background execution

    async def _worker_loop(self, name: str) -> None:
        queue = self.queue
        while True:
            job_id = await queue.get()
            try:
                await self.execute(job_id)
            finally:
                queue.task_done()

    async def execute(self, job_id: str) -> Job | None:
        """Run one job against the backend and record the outcome."""
        job = self._store.set_processing(job_id)
        if job is None or job.status is not JobStatus.PROCESSING:
            logger.warning("Skipping job {}: no longer pending", job_id)
            return job
        self._store.set_progress(job_id, 10)

        try:
            paths = self.paths_for(job)
            result = await asyncio.to_thread(
                self._backend.convert,
                paths.input_path,
                job.target_format,
                engine_id=job.engine_id,
                options=job.options,
            )
            output_filename = f"{paths.input_path.stem}.{job.target_format}"
            await asyncio.to_thread(self._storage.write_output, paths, output_filename, result.content)
        except asyncio.CancelledError:
            self._store.fail(job_id, SHUTDOWN_MESSAGE)
            raise
        except DispatchError as e:
            logger.warning("Job {} failed: {}", job_id, e)
            return self._store.fail(job_id, str(e))
        except Exception as e:
            logger.exception("Job {} failed unexpectedly", job_id)
            return self._store.fail(job_id, f"Unexpected error: {e}")

        done = self._store.complete(job_id, output_filename)
        if done is None:
            # Deleted while the backend was working.
            logger.info("Job {} was deleted during conversion; discarding output", job_id)
            self._remove_files(job)
            return None
        logger.info("Job {} completed: {}", job_id, output_filename)
        return done
