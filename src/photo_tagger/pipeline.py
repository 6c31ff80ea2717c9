"""Import pipeline orchestrator.

The stage graph is fixed::

    extract -> thumbnail -> hash -> (tag | embed) -> persist

Every stage owns a bounded :class:`StageQueue` and a thread pool. Workers block
on a full downstream queue, which is the only throttle in the system. After
hashing, an item is parked in a join table while the tag and embed branches
work on read-only copies of its inputs; it moves on to persistence once both
branches reported back.
"""

from __future__ import annotations

import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Final

import numpy as np

from photo_tagger.accel import TransformKernel, build_transform_kernel
from photo_tagger.concurrency import CLOSED, CancellationToken, StageQueue
from photo_tagger.config import STAGE_NAMES, EmbeddingConfig, Settings, TaggingConfig, load_settings
from photo_tagger.embedding import Embedder, HistogramEmbedder
from photo_tagger.errors import (
    AlreadyRunning,
    ConfigurationError,
    JobFatalError,
    MissingDependencyError,
    NoActiveJob,
    StageError,
)
from photo_tagger.metadata import MetadataExtractor, build_metadata_extractor
from photo_tagger.ml.engine import InferenceEngine, NullEngine
from photo_tagger.progress import (
    IDLE_PROGRESS,
    JOB_CANCELED,
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_RUNNING,
    ImportProgress,
    ProgressListener,
    ProgressReporter,
    StageProgress,
    dominant_stage,
)
from photo_tagger.scanner import discover_files
from photo_tagger.stages import (
    EMBED,
    EXTRACT,
    HASH,
    PERSIST,
    TAG,
    THUMBNAIL,
    BranchTask,
    StageContext,
    WorkItem,
    branch_task,
    run_embed,
    run_extract,
    run_hash,
    run_persist,
    run_tag,
    run_thumbnail,
)
from photo_tagger.store import CatalogStore
from photo_tagger.tagging import Tagger
from photo_tagger.thumbnailing import ThumbnailRenderer
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "pipeline"})

STAGE_GRAPH: Final[tuple[str, ...]] = STAGE_NAMES

# Once every worker of a stage has exited, these queues get no more input.
_CLOSES: Final[tuple[tuple[str, tuple[str, ...]], ...]] = (
    (EXTRACT, (THUMBNAIL,)),
    (THUMBNAIL, (HASH,)),
    (HASH, (TAG, EMBED)),
    (TAG, ()),
    (EMBED, (PERSIST,)),
    (PERSIST, ()),
)


@dataclass
class _JoinSlot:
    item: WorkItem
    remaining: set[str] = field(default_factory=lambda: {TAG, EMBED})
    failed: bool = False
    canceled: bool = False


class ImportJob:
    """State of one import run: queues, worker pools, counters and the cancellation token."""

    def __init__(
        self,
        root: Path,
        settings: Settings,
        context: StageContext,
        fingerprints: dict[str, tuple[float, int]],
        listeners: list[ProgressListener],
        on_finished: Callable[["ImportJob"], None] | None = None,
    ) -> None:
        self.job_id = context.import_batch_id
        self.root = root
        self.created_at = time.time()
        self.stages = STAGE_GRAPH
        self.token = CancellationToken()
        self.done = threading.Event()

        self._settings = settings
        self._ctx = context
        self._fingerprints = fingerprints
        self._on_finished = on_finished

        pipeline_cfg = settings.pipeline
        self.queues: dict[str, StageQueue[Any]] = {
            name: StageQueue(name, pipeline_cfg.stage(name).queue_capacity) for name in STAGE_GRAPH
        }
        self.stats: dict[str, StageProgress] = {
            name: StageProgress(
                name,
                pending_fn=self.queues[name].qsize,
                window_s=pipeline_cfg.throughput_window_s,
            )
            for name in STAGE_GRAPH
        }

        self._lock = threading.Lock()
        self._discovered = 0
        self._skipped = 0
        self._canceled = 0
        self._current_file: str | None = None
        self._error_message: str | None = None
        self._state = JOB_RUNNING
        self._cancelled_files: set[str] = set()
        self._joins: dict[int, _JoinSlot] = {}

        self._reporter = ProgressReporter(self.snapshot, listeners, pipeline_cfg.progress_interval_s)
        self._supervisor = threading.Thread(target=self._run, name=f"import-{self.job_id[:8]}", daemon=True)

    # -- control -----------------------------------------------------------

    def start(self) -> None:
        LOGGER.info("import_job_started", extra={"job_id": self.job_id, "root": str(self.root)})
        self._reporter.start()
        self._supervisor.start()

    def cancel(self) -> None:
        if self.done.is_set():
            return
        LOGGER.info("import_job_cancel_requested", extra={"job_id": self.job_id})
        self.token.cancel()

    def cancel_file(self, path: Path) -> None:
        with self._lock:
            self._cancelled_files.add(str(Path(path).expanduser().resolve()))

    def wait(self, timeout: float | None = None) -> bool:
        return self.done.wait(timeout)

    def fail(self, exc: BaseException) -> None:
        """Abort the job after a job-fatal error; work already persisted stays."""

        with self._lock:
            if self._error_message is None:
                self._error_message = str(exc) or type(exc).__name__
        LOGGER.error("import_job_fatal", extra={"job_id": self.job_id, "error": str(exc)})
        self.token.abort(str(exc))

    # -- progress ----------------------------------------------------------

    def snapshot(self) -> ImportProgress:
        stages = tuple(self.stats[name].snapshot() for name in STAGE_GRAPH)
        with self._lock:
            return ImportProgress(
                job_id=self.job_id,
                state=self._state,
                stages=stages,
                discovered=self._discovered,
                processed=stages[-1].completed,
                errors=sum(stage.failed for stage in stages),
                skipped=self._skipped,
                canceled=self._canceled,
                current_file=self._current_file,
                current_stage=dominant_stage(stages),
                error_message=self._error_message,
            )

    # -- supervisor --------------------------------------------------------

    def _run(self) -> None:
        pools: dict[str, ThreadPoolExecutor] = {}
        futures: dict[str, list[Future[None]]] = {}
        try:
            for name in STAGE_GRAPH:
                workers = max(1, self._settings.pipeline.stage(name).workers)
                pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"{name}-worker")
                pools[name] = pool
                futures[name] = [pool.submit(self._worker_loop, name) for _ in range(workers)]

            try:
                self._discover()
            except Exception as exc:
                LOGGER.error("discovery_error", extra={"job_id": self.job_id, "root": str(self.root), "error": str(exc)})
                self.fail(exc)
            finally:
                self.queues[EXTRACT].close()

            for name, downstream in _CLOSES:
                wait(futures[name])
                for future in futures[name]:
                    exc = future.exception()
                    if exc is not None:
                        LOGGER.error("stage_worker_crashed", extra={"stage": name, "error": str(exc)})
                        self.fail(exc)
                for queue_name in downstream:
                    self.queues[queue_name].close()
        finally:
            for pool in pools.values():
                pool.shutdown(wait=True)
            self._finish()

    def _finish(self) -> None:
        with self._lock:
            # Items still parked for a branch result never reached persistence.
            self._canceled += sum(1 for slot in self._joins.values() if not slot.failed)
            self._joins.clear()
            if self._error_message is not None:
                self._state = JOB_FAILED
            elif self.token.cancelled:
                self._state = JOB_CANCELED
            else:
                self._state = JOB_COMPLETED
        self._reporter.stop()
        progress = self.snapshot()
        LOGGER.info(
            "import_job_finished",
            extra={
                "job_id": self.job_id,
                "state": progress.state,
                "discovered": progress.discovered,
                "processed": progress.processed,
                "errors": progress.errors,
                "skipped": progress.skipped,
                "canceled": progress.canceled,
            },
        )
        if self._on_finished is not None:
            self._on_finished(self)
        self.done.set()

    def _discover(self) -> None:
        def _on_skipped(path: Path) -> None:
            with self._lock:
                self._skipped += 1

        files = discover_files(
            self.root,
            self._settings.pipeline.extensions,
            self._fingerprints,
            self.token,
            _on_skipped,
        )
        for index, discovered in enumerate(files):
            with self._lock:
                self._discovered += 1
            item = WorkItem(item_id=index, source=discovered)
            if not self.queues[EXTRACT].put(item, self.token, admitted=False):
                self._count_canceled()
                break

    # -- workers -----------------------------------------------------------

    def _count_canceled(self) -> None:
        with self._lock:
            self._canceled += 1

    def _should_drop(self, stage: str, entry: WorkItem | BranchTask) -> bool:
        if self.token.aborted:
            return True
        if stage == EXTRACT and self.token.cancelled:
            return True
        with self._lock:
            return str(entry.path) in self._cancelled_files

    def _worker_loop(self, stage: str) -> None:
        queue = self.queues[stage]
        stats = self.stats[stage]
        while True:
            entry = queue.get()
            if entry is CLOSED:
                return

            if self._should_drop(stage, entry):
                if stage in (TAG, EMBED):
                    self._cancel_branch(entry.item_id, stage)
                else:
                    self._count_canceled()
                continue

            stats.begin()
            try:
                self._process(stage, entry)
            except (StageError, JobFatalError) as exc:
                if stage in (TAG, EMBED) and not self._fail_branch(entry.item_id, stage):
                    # Already counted through the other branch.
                    stats.discard()
                else:
                    stats.fail()
                if isinstance(exc, JobFatalError):
                    self.fail(exc)
                else:
                    LOGGER.error(
                        "stage_item_error",
                        extra={"job_id": self.job_id, "stage": stage, "path": exc.path, "error": exc.message},
                    )
            else:
                stats.complete()

    def _push(self, stage: str, entry: WorkItem | BranchTask, *, count_drop: bool = True) -> None:
        if not self.queues[stage].put(entry, self.token, admitted=True) and count_drop:
            self._count_canceled()

    def _process(self, stage: str, entry: Any) -> None:
        ctx = self._ctx
        if stage == EXTRACT:
            entry.admitted = True
            with self._lock:
                self._current_file = str(entry.path)
            self._push(THUMBNAIL, run_extract(ctx, entry))
        elif stage == THUMBNAIL:
            self._push(HASH, run_thumbnail(ctx, entry))
        elif stage == HASH:
            item = run_hash(ctx, entry)
            task = branch_task(item)
            with self._lock:
                self._joins[item.item_id] = _JoinSlot(item)
            self._push(TAG, task, count_drop=False)
            self._push(EMBED, task, count_drop=False)
        elif stage == TAG:
            self._deliver(entry.item_id, TAG, run_tag(ctx, entry))
        elif stage == EMBED:
            self._deliver(entry.item_id, EMBED, run_embed(ctx, entry))
        elif stage == PERSIST:
            run_persist(ctx, entry)
        else:
            raise ValueError(f"unknown stage: {stage}")

    def _settle(self, slot: _JoinSlot, branch: str) -> bool:
        """Close ``branch`` on ``slot``; return ``True`` once no branch is outstanding.

        Must be called with ``self._lock`` held. A settled item that failed or
        was dropped releases its pixels here; a dropped one counts as canceled.
        """

        slot.remaining.discard(branch)
        if slot.remaining:
            return False
        del self._joins[slot.item.item_id]
        if slot.failed or slot.canceled:
            slot.item.release_pixels()
            if not slot.failed:
                self._canceled += 1
        return True

    def _fail_branch(self, item_id: int, branch: str) -> bool:
        """Mark the item's join slot failed; return ``True`` on its first failure."""

        with self._lock:
            slot = self._joins.get(item_id)
            if slot is None:
                return True
            first = not slot.failed
            slot.failed = True
            self._settle(slot, branch)
            return first

    def _cancel_branch(self, item_id: int, branch: str) -> None:
        with self._lock:
            slot = self._joins.get(item_id)
            if slot is None:
                return
            slot.canceled = True
            self._settle(slot, branch)

    def _deliver(self, item_id: int, branch: str, result: Any) -> None:
        """Record one branch result; forward the item to persistence once both branches are in."""

        with self._lock:
            slot = self._joins.get(item_id)
            if slot is None:
                return
            if branch == TAG:
                slot.item.tags = list(result)
            else:
                slot.item.embedding = np.asarray(result, dtype=np.float32)
                slot.item.embedding_scheme = self._ctx.embedder.scheme
            if not self._settle(slot, branch) or slot.failed or slot.canceled:
                return

        self._push(PERSIST, slot.item)


@dataclass(frozen=True)
class JobHandle:
    """Caller-facing reference to a submitted import."""

    job_id: str
    root: Path
    created_at: float
    stages: tuple[str, ...]
    _job: ImportJob = field(repr=False, compare=False)

    @property
    def done(self) -> bool:
        return self._job.done.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the job drained; return ``False`` on timeout."""

        return self._job.wait(timeout)

    def progress(self) -> ImportProgress:
        return self._job.snapshot()


def build_inference_engine(config: TaggingConfig, session_factory: Callable[[str], Any]) -> InferenceEngine:
    """Return the engine for the tagging settings, validating model files first."""

    if not config.enabled:
        return NullEngine()

    model_paths = [path for path in (config.scene_model_path, config.detection_model_path) if path is not None]
    if not model_paths:
        return NullEngine()
    for path in model_paths:
        if not Path(path).is_file():
            raise MissingDependencyError(str(path), "model file not found")

    from photo_tagger.ml.torchscript import TorchScriptEngine

    return TorchScriptEngine(
        session_factory(config.device),
        scene_model_path=config.scene_model_path,
        detection_model_path=config.detection_model_path,
        scene_labels=config.scene_labels,
        detection_labels=config.detection_labels,
        input_size=config.input_size,
        score_threshold=config.detection_score_threshold,
        nms_iou_threshold=config.nms_iou_threshold,
    )


def build_embedder(config: EmbeddingConfig, kernel: TransformKernel, session_factory: Callable[[str], Any]) -> Embedder:
    backend = (config.backend or "histogram").lower()
    if backend == "histogram":
        return HistogramEmbedder(kernel, bins=config.bins, grid_size=config.grid_size)
    if backend != "siglip":
        raise ConfigurationError(f"unknown embedding backend: {config.backend!r}")

    from photo_tagger.ml.siglip import SiglipEmbedder

    try:
        return SiglipEmbedder(session_factory(config.device), config.model_name)
    except OSError as exc:
        raise MissingDependencyError(config.model_name, "embedding model is not available locally") from exc


class ImportOrchestrator:
    """Job control surface: submit, cancel and observe imports.

    At most one job runs at a time. Model-backed collaborators are built on
    the first submission and reused by later jobs; explicit collaborators
    passed to the constructor take precedence over the settings.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        store: CatalogStore | None = None,
        *,
        extractor: MetadataExtractor | None = None,
        engine: InferenceEngine | None = None,
        embedder: Embedder | None = None,
        kernel: TransformKernel | None = None,
    ) -> None:
        self.settings = settings or load_settings()
        self._store = store
        self._extractor = extractor
        self._engine = engine
        self._embedder = embedder
        self._kernel = kernel
        self._sessions: dict[str, Any] = {}
        self._listeners: list[ProgressListener] = []
        self._lock = threading.Lock()
        self._active: ImportJob | None = None
        self._last: ImportJob | None = None
        self._starting = False

    def add_listener(self, listener: ProgressListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def _accelerator_session(self, requested: str) -> Any:
        """Return the shared session for ``requested``, opening it on first use."""

        from photo_tagger.ml.devices import AcceleratorSession

        key = (requested or "auto").lower()
        session = self._sessions.get(key)
        if session is None:
            session = AcceleratorSession(key)
            self._sessions[key] = session
        return session

    def _build_context(self, batch_id: str) -> StageContext:
        settings = self.settings
        if self._store is None:
            self._store = CatalogStore(settings.databases.catalog_url)
        if self._extractor is None:
            self._extractor = build_metadata_extractor(settings.metadata)
        if self._kernel is None:
            device = settings.accelerator.transform_device
            session = None if device == "cpu" else self._accelerator_session(device)
            self._kernel = build_transform_kernel(device, session)
        if self._engine is None:
            self._engine = build_inference_engine(settings.tagging, self._accelerator_session)
        if self._embedder is None:
            self._embedder = build_embedder(settings.embedding, self._kernel, self._accelerator_session)

        renderer = ThumbnailRenderer(
            settings.storage.thumbnails_dir,
            settings.storage.previews_dir,
            kernel=self._kernel,
            thumbnail_size=settings.pipeline.thumbnail_size,
            preview_size=settings.pipeline.preview_size,
            quality=settings.pipeline.jpeg_quality,
        )
        return StageContext(
            extractor=self._extractor,
            renderer=renderer,
            tagger=Tagger.from_config(self._engine, settings.tagging),
            embedder=self._embedder,
            store=self._store,
            import_batch_id=batch_id,
        )

    def submit(self, root_path: Path | str) -> JobHandle:
        """Validate configuration, then start importing ``root_path`` in the background.

        Raises:
            AlreadyRunning: another import is still active.
            ConfigurationError: the root is not a directory or a required
                binary or model is missing. Nothing has been dispatched.
        """

        root = Path(root_path).expanduser().resolve()
        with self._lock:
            if self._active is not None:
                raise AlreadyRunning(f"import {self._active.job_id} is still running")
            if self._starting:
                raise AlreadyRunning("another import is starting")
            if not root.is_dir():
                raise ConfigurationError(f"import root is not a directory: {root}")
            self._starting = True

        # Models and the fingerprint scan load without the lock held.
        try:
            context = self._build_context(uuid.uuid4().hex)
            fingerprints = context.store.fingerprints_under(root)
            job = ImportJob(
                root,
                self.settings,
                context,
                fingerprints,
                list(self._listeners),
                on_finished=self._job_finished,
            )
        except Exception:
            with self._lock:
                self._starting = False
            raise

        with self._lock:
            self._starting = False
            self._active = job
            self._last = job

        job.start()
        return JobHandle(job.job_id, root, job.created_at, job.stages, job)

    def _job_finished(self, job: ImportJob) -> None:
        with self._lock:
            if self._active is job:
                self._active = None

    def _job_for(self, handle: JobHandle) -> ImportJob:
        with self._lock:
            for job in (self._active, self._last):
                if job is not None and job.job_id == handle.job_id:
                    return job
        raise NoActiveJob(f"unknown import job: {handle.job_id}")

    def cancel(self, handle: JobHandle) -> None:
        """Request cooperative cancellation; queued items are dropped, admitted ones finish."""

        self._job_for(handle).cancel()

    def cancel_file(self, path: Path | str) -> None:
        """Drop one file from the active import if it has not entered the pipeline yet."""

        with self._lock:
            job = self._active
        if job is None:
            raise NoActiveJob("no import is running")
        job.cancel_file(Path(path))

    def status(self, handle: JobHandle) -> ImportProgress:
        return self._job_for(handle).snapshot()

    def progress(self) -> ImportProgress:
        """Snapshot of the running job, or of the last finished one."""

        with self._lock:
            job = self._active or self._last
        return job.snapshot() if job is not None else IDLE_PROGRESS

    def is_importing(self) -> bool:
        with self._lock:
            return self._active is not None or self._starting


__all__ = [
    "ImportJob",
    "ImportOrchestrator",
    "JobHandle",
    "STAGE_GRAPH",
    "build_embedder",
    "build_inference_engine",
]
