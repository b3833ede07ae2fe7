"""Kubernetes access to IAMRoleBinding resources."""

from __future__ import annotations

import copy
import logging
import random
import threading
import time
from typing import Any, Callable, Iterator

from kubernetes import client, watch
from kubernetes.client.exceptions import ApiException

from ... import metrics
from ...constants import API_GROUP, API_GROUP_VERSION, API_VERSION, FIELD_MANAGER, FINALIZER, KIND_BINDING, PLURAL_BINDING
from ...errors import ConflictError, NotFoundError, StoreError, TransientStoreError
from ...models import Binding, ReconcileKey, WatchEvent
from ...utils.rate_limit import rate_limit_k8s

logger = logging.getLogger(__name__)

WATCH_MAX_BACKOFF_SECONDS = 30.0


def translate_api_exception(e: ApiException, operation: str) -> StoreError:
    """Convert a Kubernetes API exception into the operator error taxonomy."""
    message = f"{operation} failed: {e.status} {e.reason}"
    if e.status == 409:
        return ConflictError(message)
    if e.status == 404:
        return NotFoundError(message)
    if e.status in (401, 403):
        return StoreError(message)
    return TransientStoreError(message)


class KubernetesBindingStore:
    """Typed read, status and finalizer operations plus a resumable watch."""

    def __init__(
        self,
        api: client.CustomObjectsApi | None = None,
        namespace: str | None = None,
        watch_timeout_seconds: int = 300,
        watch_factory: Callable[[], watch.Watch] = watch.Watch,
    ) -> None:
        """Initialize the store.

        Args:
            api: CustomObjectsApi instance
            namespace: Namespace to watch, or None for all namespaces
            watch_timeout_seconds: Server-side timeout of one watch request
            watch_factory: Factory for watch objects (tests)
        """
        self.api = api or client.CustomObjectsApi()
        self.namespace = namespace
        self.watch_timeout_seconds = watch_timeout_seconds
        self._watch_factory = watch_factory
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def _call(self, operation: str, func: Callable[..., Any], **kwargs: Any) -> Any:
        """Invoke a Kubernetes API call with rate limiting and metrics."""
        start_time = time.time()
        try:
            result = rate_limit_k8s(func)(**kwargs)
            metrics.api_call_total.labels(api_type="k8s", operation=operation, result="success").inc()
            return result
        except ApiException as e:
            result_label = "not_found" if e.status == 404 else "conflict" if e.status == 409 else "error"
            metrics.api_call_total.labels(api_type="k8s", operation=operation, result=result_label).inc()
            raise
        finally:
            duration = time.time() - start_time
            metrics.api_call_duration_seconds.labels(api_type="k8s", operation=operation).observe(duration)

    @staticmethod
    def _ensure_type(obj: dict[str, Any]) -> dict[str, Any]:
        obj.setdefault("apiVersion", API_GROUP_VERSION)
        obj.setdefault("kind", KIND_BINDING)
        return obj

    def get(self, key: ReconcileKey) -> Binding | None:
        """Fetch a Binding by key.

        Returns:
            The Binding, or None if it does not exist
        """
        try:
            obj = self._call(
                "get_binding",
                self.api.get_namespaced_custom_object,
                group=API_GROUP,
                version=API_VERSION,
                namespace=key.namespace,
                plural=PLURAL_BINDING,
                name=key.name,
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise translate_api_exception(e, "get_binding") from e
        return Binding(self._ensure_type(obj))

    def list(self) -> tuple[list[Binding], str | None]:
        """List Bindings in the watched scope.

        Returns:
            Bindings and the list resourceVersion to start a watch from
        """
        try:
            if self.namespace:
                result = self._call(
                    "list_bindings",
                    self.api.list_namespaced_custom_object,
                    group=API_GROUP,
                    version=API_VERSION,
                    namespace=self.namespace,
                    plural=PLURAL_BINDING,
                )
            else:
                result = self._call(
                    "list_bindings",
                    self.api.list_cluster_custom_object,
                    group=API_GROUP,
                    version=API_VERSION,
                    plural=PLURAL_BINDING,
                )
        except ApiException as e:
            raise translate_api_exception(e, "list_bindings") from e

        bindings = [Binding(self._ensure_type(item)) for item in result.get("items", [])]
        return bindings, result.get("metadata", {}).get("resourceVersion")

    def update_status(self, binding: Binding, status: dict[str, Any]) -> Binding:
        """Replace the status subresource, guarded by the Binding's resourceVersion.

        Raises:
            ConflictError: If the Binding changed since it was read
            StoreError: On any other API failure
        """
        body = copy.deepcopy(binding.body)
        body["status"] = status
        try:
            obj = self._call(
                "update_status",
                self.api.replace_namespaced_custom_object_status,
                group=API_GROUP,
                version=API_VERSION,
                namespace=binding.namespace,
                plural=PLURAL_BINDING,
                name=binding.name,
                body=body,
                field_manager=FIELD_MANAGER,
            )
        except ApiException as e:
            raise translate_api_exception(e, "update_status") from e
        return Binding(self._ensure_type(obj))

    def _patch_finalizers(self, binding: Binding, finalizers: list[str], operation: str) -> Binding:
        # resourceVersion in a merge patch acts as a precondition
        patch = {
            "metadata": {
                "finalizers": finalizers,
                "resourceVersion": binding.resource_version,
            }
        }
        try:
            obj = self._call(
                operation,
                self.api.patch_namespaced_custom_object,
                group=API_GROUP,
                version=API_VERSION,
                namespace=binding.namespace,
                plural=PLURAL_BINDING,
                name=binding.name,
                body=patch,
                field_manager=FIELD_MANAGER,
            )
        except ApiException as e:
            raise translate_api_exception(e, operation) from e
        return Binding(self._ensure_type(obj))

    def add_finalizer(self, binding: Binding) -> Binding:
        """Add the operator finalizer."""
        if binding.has_finalizer(FINALIZER):
            return binding
        return self._patch_finalizers(binding, binding.finalizers + [FINALIZER], "add_finalizer")

    def remove_finalizer(self, binding: Binding) -> Binding:
        """Remove the operator finalizer. A Binding that is already gone counts as done."""
        if not binding.has_finalizer(FINALIZER):
            return binding
        finalizers = [f for f in binding.finalizers if f != FINALIZER]
        try:
            return self._patch_finalizers(binding, finalizers, "remove_finalizer")
        except NotFoundError:
            return binding

    def stop_watch(self) -> None:
        """Interrupt the currently open watch stream, if any."""
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _stream_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "group": API_GROUP,
            "version": API_VERSION,
            "plural": PLURAL_BINDING,
        }
        if self.namespace:
            kwargs["namespace"] = self.namespace
        return kwargs

    def _relist(self, known: dict[ReconcileKey, str | None]) -> tuple[list[WatchEvent], str | None]:
        """List from scratch and synthesize events against the known keys."""
        bindings, resource_version = self.list()
        events = []
        current = {}
        for binding in bindings:
            current[binding.key] = binding.resource_version
            events.append(WatchEvent("ADDED", binding, binding.resource_version))
        for key in set(known) - set(current):
            gone = Binding({"metadata": {"name": key.name, "namespace": key.namespace}})
            events.append(WatchEvent("DELETED", gone, None))
        known.clear()
        known.update(current)
        return events, resource_version

    def watch(
        self,
        resource_version: str | None = None,
        stop_event: threading.Event | None = None,
    ) -> Iterator[WatchEvent]:
        """Stream Binding change events until stop_event is set.

        Without a starting cursor the stream begins with a full list, emitted
        as ADDED events. The cursor advances with every event; after a
        disconnect the watch resumes from it, and when the server reports the
        cursor as expired (410 Gone) the store relists, emitting ADDED events
        for live Bindings and DELETED events for ones that vanished.

        Args:
            resource_version: Cursor to resume from
            stop_event: Event that ends the stream

        Yields:
            Watch events in server order
        """
        stop = stop_event or threading.Event()
        known: dict[ReconcileKey, str | None] = {}
        backoff = 1.0
        list_func = self.api.list_namespaced_custom_object if self.namespace else self.api.list_cluster_custom_object

        while not stop.is_set():
            if resource_version is None:
                try:
                    events, resource_version = self._relist(known)
                except StoreError as e:
                    logger.error(f"Binding list failed: {e}")
                    metrics.watch_restarts_total.labels(reason="list_error").inc()
                    stop.wait(timeout=backoff * (0.5 + random.random()))  # noqa: S311
                    backoff = min(backoff * 2, WATCH_MAX_BACKOFF_SECONDS)
                    continue
                backoff = 1.0
                yield from events
                if stop.is_set():
                    break

            watcher = self._watch_factory()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                stream = watcher.stream(
                    list_func,
                    resource_version=resource_version,
                    timeout_seconds=self.watch_timeout_seconds,
                    allow_watch_bookmarks=True,
                    **self._stream_kwargs(),
                )
                for event in stream:
                    if stop.is_set():
                        break
                    event_type = str(event.get("type", ""))
                    obj = event.get("object")
                    if not isinstance(obj, dict):
                        continue
                    new_version = obj.get("metadata", {}).get("resourceVersion")
                    if new_version:
                        resource_version = new_version
                    if event_type == "BOOKMARK":
                        continue

                    binding = Binding(self._ensure_type(obj))
                    if event_type == "DELETED":
                        known.pop(binding.key, None)
                    else:
                        known[binding.key] = new_version
                    yield WatchEvent(event_type, binding, new_version)
                backoff = 1.0
                metrics.watch_restarts_total.labels(reason="timeout").inc()
            except ApiException as e:
                if e.status == 410:
                    logger.warning("Binding watch resourceVersion expired, re-listing")
                    metrics.watch_restarts_total.labels(reason="expired").inc()
                    resource_version = None
                    continue

                if e.status in (401, 403):
                    logger.error(f"Binding watch denied ({e.status}); check the operator RBAC permissions")
                else:
                    logger.error(f"Binding watch failed: {e.status} {e.reason}")
                metrics.watch_restarts_total.labels(reason="error").inc()
                stop.wait(timeout=backoff * (0.5 + random.random()))  # noqa: S311
                backoff = min(backoff * 2, WATCH_MAX_BACKOFF_SECONDS)
            except Exception:
                logger.exception("Unexpected Binding watch error")
                metrics.watch_restarts_total.labels(reason="error").inc()
                stop.wait(timeout=backoff * (0.5 + random.random()))  # noqa: S311
                backoff = min(backoff * 2, WATCH_MAX_BACKOFF_SECONDS)
            finally:
                with self._watcher_lock:
                    self._active_watcher = None
