"""Controller manager: work queues, workers and watches.

Store changes are turned into object keys and fed to one ``Controller``
per reconciled kind. A controller runs a bounded pool of workers over a
``WorkQueue`` that never hands out a key that is already being processed,
so each object is reconciled by at most one worker at a time.

Example:
    store = InMemoryStore()
    async with Manager(store, ManagerConfig(watch_filter="team-a")):
        await store.create(cluster)
        ...
"""

from __future__ import annotations

import asyncio
import contextlib
import random
from collections.abc import Coroutine
from typing import Any

from crunchplane.api.cluster import Cluster, DataCrunchCluster
from crunchplane.api.machine import DataCrunchMachine, Machine
from crunchplane.api.meta import CLUSTER_NAME_LABEL, WATCH_LABEL, ObjectKey, Resource
from crunchplane.cloud.interfaces import ClientFactory
from crunchplane.config import ManagerConfig
from crunchplane.controllers.base import ClientProvider, Reconciler, default_client_factory
from crunchplane.controllers.cluster import DataCrunchClusterReconciler
from crunchplane.controllers.events import EventRecorder
from crunchplane.controllers.machine import DataCrunchMachineReconciler
from crunchplane.core.exceptions import ReconcileError
from crunchplane.observability.logger import logger
from crunchplane.observability.logging import setup_logging, teardown_logging
from crunchplane.store import Change, ObjectStore, Unsubscribe


def backoff_delay(
    failures: int,
    *,
    base_delay: float = 1.0,
    max_delay: float = 300.0,
    exponential_base: float = 2.0,
    jitter: bool = False,
) -> float:
    """Delay before retry number ``failures`` (1 for the first retry).

    Delay formula: min(base_delay * (exponential_base ** (failures - 1)), max_delay),
    plus up to 10% random jitter when enabled.
    """
    attempt = max(failures - 1, 0)
    delay = min(base_delay * (exponential_base**attempt), max_delay)
    if jitter:
        delay += random.uniform(0, delay * 0.1)
    return delay


# =============================================================================
# Work Queue
# =============================================================================


class WorkQueue[K]:
    """Deduplicating FIFO of keys with at-most-one-in-flight semantics.

    - adding a key that is already queued is a no-op
    - adding a key that is being processed defers it until ``done``
    - ``add_after`` keeps only the earliest pending timer per key
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[K] = asyncio.Queue()
        self._queued: set[K] = set()
        self._processing: set[K] = set()
        self._dirty: set[K] = set()
        self._timers: dict[K, asyncio.TimerHandle] = {}
        self._shutdown = False

    def __len__(self) -> int:
        return len(self._queued)

    @property
    def processing(self) -> frozenset[K]:
        return frozenset(self._processing)

    @property
    def idle(self) -> bool:
        return not self._queued and not self._processing and not self._dirty

    def add(self, key: K) -> None:
        if self._shutdown or key in self._queued:
            return
        if key in self._processing:
            self._dirty.add(key)
            return
        self._queued.add(key)
        self._queue.put_nowait(key)

    def add_after(self, key: K, delay: float) -> None:
        if self._shutdown:
            return
        if delay <= 0:
            self.add(key)
            return

        loop = asyncio.get_running_loop()
        when = loop.time() + delay
        existing = self._timers.get(key)
        if existing is not None:
            if existing.when() <= when:
                return
            existing.cancel()
        self._timers[key] = loop.call_at(when, self._fire, key)

    def _fire(self, key: K) -> None:
        self._timers.pop(key, None)
        self.add(key)

    async def get(self) -> K:
        key = await self._queue.get()
        self._queued.discard(key)
        self._processing.add(key)
        return key

    def done(self, key: K) -> None:
        self._processing.discard(key)
        if key in self._dirty:
            self._dirty.discard(key)
            self.add(key)

    def shut_down(self) -> None:
        self._shutdown = True
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()


# =============================================================================
# Controller
# =============================================================================


class Controller:
    """Runs one reconciler over its work queue with ``concurrency`` workers."""

    def __init__(
        self,
        reconciler: Reconciler,
        *,
        concurrency: int = 10,
        timeout: float = 120.0,
        backoff_base: float = 1.0,
        backoff_max: float = 300.0,
    ) -> None:
        self.reconciler = reconciler
        self.queue: WorkQueue[ObjectKey] = WorkQueue()
        self._concurrency = concurrency
        self._timeout = timeout
        self._backoff_base = backoff_base
        self._backoff_max = backoff_max
        self._failures: dict[ObjectKey, int] = {}
        self._workers: list[asyncio.Task[None]] = []
        self._log = logger.bind(controller=reconciler.KIND.lower())

    def failures(self, key: ObjectKey) -> int:
        return self._failures.get(key, 0)

    def start(self) -> None:
        for i in range(self._concurrency):
            self._workers.append(
                asyncio.create_task(self._worker(), name=f"{self.reconciler.KIND}-worker-{i}"),
            )

    async def stop(self) -> None:
        self.queue.shut_down()
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()

    async def _worker(self) -> None:
        while True:
            key = await self.queue.get()
            try:
                await self.process(key)
            finally:
                self.queue.done(key)

    async def process(self, key: ObjectKey) -> None:
        """Reconcile ``key`` once and schedule its next run, if any."""
        log = self._log.bind(namespace=key.namespace, name=key.name)
        try:
            async with asyncio.timeout(self._timeout):
                result = await self.reconciler.reconcile(key)
        except ReconcileError as e:
            failures = self._failures[key] = self._failures.get(key, 0) + 1
            delay = e.requeue_after if e.requeue_after is not None else self._backoff(failures)
            log.warning(
                "Reconcile failed (attempt {failures}), retrying in {delay:.1f}s: {error}",
                failures=failures, delay=delay, error=e,
            )
            self.queue.add_after(key, delay)
            return
        except TimeoutError:
            failures = self._failures[key] = self._failures.get(key, 0) + 1
            delay = self._backoff(failures)
            log.warning(
                "Reconcile timed out after {timeout}s, retrying in {delay:.1f}s",
                timeout=self._timeout, delay=delay,
            )
            self.queue.add_after(key, delay)
            return
        except Exception as e:
            failures = self._failures[key] = self._failures.get(key, 0) + 1
            delay = self._backoff(failures)
            log.error(
                "Reconcile failed (attempt {failures}), retrying in {delay:.1f}s: {error}",
                failures=failures, delay=delay, error=e,
            )
            self.queue.add_after(key, delay)
            return

        self._failures.pop(key, None)
        if result.requeue_after is not None:
            log.debug("Requeue in {delay}s", delay=result.requeue_after)
            self.queue.add_after(key, result.requeue_after)

    def _backoff(self, failures: int) -> float:
        return backoff_delay(failures, base_delay=self._backoff_base, max_delay=self._backoff_max)


# =============================================================================
# Manager
# =============================================================================


class Manager:
    """Wires the store, both reconcilers and their controllers together.

    Watches:
        - DataCrunchCluster / DataCrunchMachine changes enqueue the object
        - a Cluster change enqueues its infrastructure DataCrunchCluster and
          every DataCrunchMachine labelled with its name
        - a Machine change enqueues its infrastructure DataCrunchMachine

    Every object is also re-enqueued every ``sync_period`` seconds.
    """

    def __init__(
        self,
        store: ObjectStore,
        config: ManagerConfig | None = None,
        *,
        client_factory: ClientFactory | None = None,
        recorder: EventRecorder | None = None,
    ) -> None:
        self.store = store
        self.config = config = config or ManagerConfig()
        self.recorder = recorder or EventRecorder()

        clients = ClientProvider(
            store,
            client_factory or default_client_factory(config.request_timeout),
            default_secret=config.credentials_secret,
        )
        self.clusters = Controller(
            DataCrunchClusterReconciler(
                store, clients, recorder=self.recorder, requeue_delay=config.requeue_delay,
            ),
            concurrency=config.cluster_concurrency,
            timeout=config.reconcile_timeout,
            backoff_base=config.backoff_base,
            backoff_max=config.backoff_max,
        )
        self.machines = Controller(
            DataCrunchMachineReconciler(
                store, clients, recorder=self.recorder, requeue_delay=config.requeue_delay,
            ),
            concurrency=config.machine_concurrency,
            timeout=config.reconcile_timeout,
            backoff_base=config.backoff_base,
            backoff_max=config.backoff_max,
        )

        self._unsubscribe: Unsubscribe | None = None
        self._tasks: set[asyncio.Task[Any]] = set()
        self._resync_task: asyncio.Task[None] | None = None
        self._log = logger.bind(component="manager")

    @property
    def idle(self) -> bool:
        return self.clusters.queue.idle and self.machines.queue.idle and not self._tasks

    def _controller_for(self, kind: str) -> Controller | None:
        match kind:
            case DataCrunchCluster.KIND:
                return self.clusters
            case DataCrunchMachine.KIND:
                return self.machines
            case _:
                return None

    def accepts(self, obj: Resource) -> bool:
        watch_filter = self.config.watch_filter
        if not watch_filter:
            return True
        return obj.metadata.labels.get(WATCH_LABEL) == watch_filter

    def enqueue(self, kind: str, key: ObjectKey) -> None:
        controller = self._controller_for(kind)
        if controller is None:
            raise ValueError(f"No controller for kind {kind!r}")
        controller.queue.add(key)

    # ─── Watches ──────────────────────────────────────────────────────

    def _on_change(self, change: Change) -> None:
        if not self.accepts(change.obj):
            return

        match change.obj:
            case DataCrunchCluster() | DataCrunchMachine():
                self.enqueue(change.kind, change.key)
            case Cluster(spec=spec):
                ref = spec.infrastructure_ref
                if ref is not None and ref.kind == DataCrunchCluster.KIND:
                    self.enqueue(DataCrunchCluster.KIND, ObjectKey(change.key.namespace, ref.name))
                self._spawn(self._enqueue_cluster_machines(change.key))
            case Machine(spec=spec):
                ref = spec.infrastructure_ref
                if ref is not None and ref.kind == DataCrunchMachine.KIND:
                    self.enqueue(DataCrunchMachine.KIND, ObjectKey(change.key.namespace, ref.name))

    async def _enqueue_cluster_machines(self, cluster: ObjectKey) -> None:
        machines = await self.store.list(
            DataCrunchMachine, cluster.namespace, {CLUSTER_NAME_LABEL: cluster.name},
        )
        for dc_machine in machines:
            if self.accepts(dc_machine):
                self.machines.queue.add(dc_machine.key)

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and (error := task.exception()) is not None:
            self._log.error("Watch handler failed: {error}", error=error)

    # ─── Resync ───────────────────────────────────────────────────────

    async def resync(self) -> None:
        """Enqueue every DataCrunchCluster and DataCrunchMachine."""
        for obj in await self.store.list(DataCrunchCluster):
            if self.accepts(obj):
                self.clusters.queue.add(obj.key)
        for obj in await self.store.list(DataCrunchMachine):
            if self.accepts(obj):
                self.machines.queue.add(obj.key)

    async def _resync_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.sync_period)
            self._log.debug("Periodic resync")
            await self.resync()

    # ─── Lifecycle ────────────────────────────────────────────────────

    async def start(self) -> None:
        self._log.info(
            "Starting manager (watch filter: {watch_filter})",
            watch_filter=self.config.watch_filter or "none",
        )
        self._unsubscribe = self.store.subscribe(self._on_change)
        self.clusters.start()
        self.machines.start()
        await self.resync()
        self._resync_task = asyncio.create_task(self._resync_loop(), name="resync")

    async def stop(self) -> None:
        self._log.info("Stopping manager")
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._resync_task is not None:
            self._resync_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._resync_task
            self._resync_task = None
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        await self.clusters.stop()
        await self.machines.stop()

    async def run(self) -> None:
        """Configure logging and run until cancelled."""
        handlers = setup_logging(self.config.log)
        try:
            await self.start()
            try:
                await asyncio.Event().wait()
            finally:
                await self.stop()
        finally:
            teardown_logging(handlers)

    async def __aenter__(self) -> Manager:
        await self.start()
        return self

    async def __aexit__(self, *_: Any) -> None:
        await self.stop()


__all__ = ["Controller", "Manager", "WorkQueue", "backoff_delay"]
