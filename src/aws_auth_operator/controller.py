"""Watch pump, periodic resync and worker pool around the reconciler."""

from __future__ import annotations

import contextvars
import logging
import random
import threading
from typing import Callable

from . import metrics
from .errors import StoreError
from .models import Outcome, ReconcileKey, Requeue, RequeueImmediate, WatchEvent
from .reconciler import OperatorContext, reconcile
from .workqueue import WorkQueue

logger = logging.getLogger(__name__)

INITIAL_LIST_MAX_BACKOFF_SECONDS = 30.0


class Controller:
    """Feeds Binding keys from the watch into the work queue and drains it with workers.

    Only changes that need reconciliation are enqueued: additions,
    deletions, spec changes (generation bumps), deletion requests and
    finalizer edits. Status-only updates, including the ones the
    reconciler writes itself, are ignored; the periodic resync catches
    out-of-band drift in IAM.
    """

    def __init__(
        self,
        ctx: OperatorContext,
        queue: WorkQueue | None = None,
        reconcile_fn: Callable[[ReconcileKey, OperatorContext], Outcome] = reconcile,
    ) -> None:
        self.ctx = ctx
        self.queue = queue if queue is not None else WorkQueue(backoff=ctx.backoff)
        self._reconcile_fn = reconcile_fn
        self._stop = threading.Event()
        self._ready = threading.Event()
        self._known: dict[ReconcileKey, tuple[int, bool, tuple[str, ...]]] = {}
        self._known_lock = threading.Lock()
        self._threads: list[threading.Thread] = []

    def is_ready(self) -> bool:
        """True once the initial list has been queued and until stop."""
        return self._ready.is_set() and not self._stop.is_set()

    def known_keys(self) -> list[ReconcileKey]:
        with self._known_lock:
            return list(self._known)

    def handle_event(self, event: WatchEvent) -> bool:
        """Queue the Binding of a watch event if the change needs reconciling.

        Returns:
            True if the key was queued
        """
        binding = event.binding
        key = binding.key
        if event.type == "DELETED":
            with self._known_lock:
                self._known.pop(key, None)
            self.queue.add(key)
            return True

        fingerprint = (binding.generation, bool(binding.deletion_timestamp), tuple(sorted(binding.finalizers)))
        with self._known_lock:
            previous = self._known.get(key)
            self._known[key] = fingerprint

        if event.type == "ADDED" or previous != fingerprint:
            self.queue.add(key)
            return True
        return False

    def process(self, key: ReconcileKey) -> Outcome:
        """Reconcile one key and schedule it according to the outcome."""
        try:
            outcome = self._reconcile_fn(key, self.ctx)
        except Exception:
            logger.exception(f"Reconcile of {key} raised")
            outcome = Requeue(after=self.ctx.backoff.when(key), reason="InternalError")

        if isinstance(outcome, RequeueImmediate):
            metrics.queue_requeues_total.labels(reason="immediate").inc()
            self.queue.add(key)
        elif isinstance(outcome, Requeue):
            metrics.queue_requeues_total.labels(reason=outcome.reason or "delayed").inc()
            logger.debug(f"Requeueing {key} in {outcome.after:.2f}s ({outcome.reason})")
            self.queue.add_after(key, outcome.after)
        return outcome

    def _worker(self) -> None:
        while True:
            key = self.queue.get()
            if key is None:
                return
            try:
                self.process(key)
            finally:
                self.queue.done(key)

    def _initial_list(self) -> str | None:
        backoff = 1.0
        while not self._stop.is_set():
            try:
                bindings, resource_version = self.ctx.store.list()
            except StoreError as e:
                logger.error(f"Initial Binding list failed: {e}")
                self._stop.wait(timeout=backoff * (0.5 + random.random()))  # noqa: S311
                backoff = min(backoff * 2, INITIAL_LIST_MAX_BACKOFF_SECONDS)
                continue
            for binding in bindings:
                self.handle_event(WatchEvent("ADDED", binding, binding.resource_version))
            logger.info(f"Queued {len(bindings)} Bindings from the initial list")
            return resource_version
        return None

    def _watch_loop(self) -> None:
        resource_version = self._initial_list()
        if self._stop.is_set():
            return
        self._ready.set()
        for event in self.ctx.store.watch(resource_version, self._stop):
            try:
                self.handle_event(event)
            except Exception:
                logger.exception(f"Failed to handle {event.type} event")
        logger.info("Binding watch stopped")

    def _resync_loop(self) -> None:
        while not self._stop.wait(timeout=self.ctx.config.resync_interval):
            keys = self.known_keys()
            for key in keys:
                self.queue.add(key)
            metrics.queue_requeues_total.labels(reason="resync").inc(len(keys))
            logger.debug(f"Resync queued {len(keys)} Bindings")

    def _spawn(self, target: Callable[[], None], name: str) -> None:
        # Each thread gets its own copy of the caller's context (kopf posting state)
        thread_context = contextvars.copy_context()
        thread = threading.Thread(target=thread_context.run, args=(target,), name=name, daemon=True)
        thread.start()
        self._threads.append(thread)

    def start(self) -> None:
        """Start the watch, resync and worker threads."""
        self._spawn(self._watch_loop, "binding-watch")
        self._spawn(self._resync_loop, "binding-resync")
        for index in range(self.ctx.config.concurrency):
            self._spawn(self._worker, f"reconcile-worker-{index}")
        logger.info(f"Controller started with {self.ctx.config.concurrency} workers")

    def stop(self, timeout: float = 30.0) -> None:
        """Stop intake and wait for in-flight reconciliations to finish."""
        self._stop.set()
        self.ctx.store.stop_watch()
        self.queue.shut_down()
        for thread in self._threads:
            thread.join(timeout=timeout)
            if thread.is_alive():
                logger.warning(f"Thread {thread.name} did not stop within {timeout}s")
        self._threads.clear()
        logger.info("Controller stopped")
