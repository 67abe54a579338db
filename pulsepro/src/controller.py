from __future__ import annotations

import logging
import random
import threading
import time
from dataclasses import dataclass
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException, CoreV1Api, CustomObjectsApi

from pulsepro.src.applier import HelmfileApplier
from pulsepro.src.config import OperatorConfig
from pulsepro.src.connectivity import ConnectivityChecker
from pulsepro.src.errors import ConfigurationError, ReconcileCancelled
from pulsepro.src.gitsync import RepositorySync
from pulsepro.src.kube import ResourceStore
from pulsepro.src.metrics import METRICS
from pulsepro.src.reconciler import DeploymentReconciler
from pulsepro.src.resources import DEPLOYMENT_KIND, ROLLOUT_KIND, build_registry
from pulsepro.src.rollout import RolloutPropagator
from pulsepro.src.workqueue import WorkQueue

WATCH_TIMEOUT_SECONDS = 30


@dataclass(frozen=True)
class WorkItem:
    """Work-queue key: one custom resource of one kind."""

    kind: str
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.kind} {self.namespace}/{self.name}"


def _metadata(obj: Any) -> dict[str, Any]:
    if not isinstance(obj, dict):
        return {}
    metadata = obj.get("metadata")
    return metadata if isinstance(metadata, dict) else {}


def _work_item(kind: str, metadata: dict[str, Any]) -> WorkItem | None:
    namespace = metadata.get("namespace")
    name = metadata.get("name")
    if not namespace or not name:
        return None
    return WorkItem(kind=kind, namespace=str(namespace), name=str(name))


class OperatorController:
    """List-then-watch PulsePro custom resources and dispatch them to workers.

    One watch thread per kind feeds :class:`WorkItem` keys into a shared
    :class:`WorkQueue`; a pool of worker threads pops keys and runs the
    deployment reconciler or the rollout propagator.  The queue never hands the
    same key to two workers, so passes for one resource are serialized while
    different resources reconcile concurrently.

    Watch events only enqueue keys when ``metadata.generation`` or
    ``metadata.uid`` changed.  The
    reconciler's own status writes do not bump the generation, so they do not
    re-trigger a pass; periodic re-syncs come from the requeue delay returned by
    the reconciler instead.

    ``401`` / ``403`` responses from the Kubernetes API are treated as
    configuration errors (RBAC/auth) and stop the whole controller.
    """

    def __init__(
        self,
        store: ResourceStore,
        deployment_reconciler: DeploymentReconciler,
        rollout_propagator: RolloutPropagator,
        queue: WorkQueue,
        namespace: str = "",
        workers: int = 2,
        logger: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.deployment_reconciler = deployment_reconciler
        self.rollout_propagator = rollout_propagator
        self.queue = queue
        self.namespace = namespace
        self.workers = workers
        self.logger = logger or logging.getLogger(__name__)
        self.kinds = (DEPLOYMENT_KIND, ROLLOUT_KIND)

        self.ready = threading.Event()
        self.fatal = threading.Event()
        self._stop = threading.Event()
        self._listed: set[str] = set()
        self._generations: dict[WorkItem, tuple[str, int]] = {}
        self._state_lock = threading.Lock()
        self._active_watchers: set[watch.Watch] = set()

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt open watch streams."""
        self._stop.set()
        self.queue.shut_down()
        with self._state_lock:
            watchers = list(self._active_watchers)
        for active_watcher in watchers:
            active_watcher.stop()

    def _mark_listed(self, kind: str) -> None:
        with self._state_lock:
            self._listed.add(kind)
            if self._listed.issuperset(self.kinds):
                self.ready.set()

    def listed_kinds(self) -> list[str]:
        """Kinds whose initial list has completed, in sorted order."""
        with self._state_lock:
            return sorted(self._listed)

    def handle_event(self, kind: str, event_type: str, obj: Any) -> WorkItem | None:
        """Turn one watch event into a queued key.

        ``ADDED`` always enqueues.  ``MODIFIED`` enqueues only when the
        generation or ``uid`` differs from the last one seen, which filters out
        status subresource writes but still catches an object deleted and
        re-created under the same name.  ``DELETED`` forgets the key; a pass
        already queued for it will find the record gone and end quietly.
        """
        metadata = _metadata(obj)
        item = _work_item(kind, metadata)
        if item is None:
            return None
        if event_type == "DELETED":
            with self._state_lock:
                self._generations.pop(item, None)
            return None
        if event_type not in {"ADDED", "MODIFIED"}:
            return None

        seen = (str(metadata.get("uid") or ""), int(metadata.get("generation") or 0))
        with self._state_lock:
            previous = self._generations.get(item)
            self._generations[item] = seen
        if event_type == "MODIFIED" and previous == seen:
            self.logger.debug("Ignoring %s for %s without generation change", event_type, item)
            return None

        self.queue.add(item)
        METRICS.queue_depth.set(len(self.queue))
        return item

    def process_item(self, item: WorkItem) -> None:
        """Run one reconcile pass for *item* and schedule what comes next."""
        started = time.monotonic()
        outcome = "success"
        try:
            if item.kind == DEPLOYMENT_KIND:
                result = self.deployment_reconciler.reconcile(
                    item.namespace, item.name, stop=self._stop
                )
                requeue_after = result.requeue_after
            else:
                self.rollout_propagator.reconcile(item.namespace, item.name)
                requeue_after = None
        except ReconcileCancelled:
            outcome = "cancelled"
            self.logger.info("Reconcile of %s cancelled by shutdown", item)
        except ConfigurationError:
            outcome = "config_error"
            self.queue.forget(item)
            self.logger.exception(
                "Reconcile of %s needs a configuration fix; waiting for the next change", item
            )
        except Exception:
            outcome = "error"
            delay = self.queue.backoff(item)
            METRICS.retry_total.labels(kind=item.kind).inc()
            self.logger.exception(
                "Reconcile of %s failed; retry attempt %d in %.1fs",
                item,
                self.queue.failures(item),
                delay,
            )
        else:
            self.queue.forget(item)
            if requeue_after is not None:
                self.queue.add_after(item, requeue_after)
        finally:
            METRICS.reconcile_total.labels(kind=item.kind, result=outcome).inc()
            METRICS.reconcile_duration_seconds.labels(kind=item.kind).observe(
                time.monotonic() - started
            )
            METRICS.queue_depth.set(len(self.queue))

    def _run_worker(self) -> None:
        while not self._stop.is_set():
            item = self.queue.get(timeout=1.0)
            if item is None:
                continue
            try:
                self.process_item(item)  # type: ignore[arg-type]
            finally:
                self.queue.done(item)

    def _enqueue_listing(
        self, kind: str, listing: Any, event_type: str, prune: bool = False
    ) -> str | None:
        """Feed listed objects through :meth:`handle_event`; return the list resourceVersion.

        With *prune*, tracked keys of *kind* missing from the listing are
        forgotten; their ``DELETED`` events were missed.
        """
        items = listing.get("items") if isinstance(listing, dict) else None
        listed: set[WorkItem] = set()
        for obj in items or []:
            item = _work_item(kind, _metadata(obj))
            if item is not None:
                listed.add(item)
            self.handle_event(kind, event_type, obj)
        if prune:
            with self._state_lock:
                stale = [
                    item for item in self._generations if item.kind == kind and item not in listed
                ]
                for item in stale:
                    del self._generations[item]
            if stale:
                self.logger.info(
                    "Forgot %d %s object(s) deleted while disconnected", len(stale), kind
                )
        return _metadata(listing).get("resourceVersion")

    def _fatal_api_error(self, kind: str, exc: ApiException, phase: str) -> bool:
        if exc.status not in {401, 403}:
            return False
        self.logger.error(
            "Kubernetes API access denied during %s of %s (status=%s). "
            "Check operator RBAC and service account permissions.",
            phase,
            kind,
            exc.status,
        )
        METRICS.watch_errors_total.labels(kind=kind).inc()
        self.fatal.set()
        self._stop.set()
        self.ready.clear()
        return True

    def watch_kind(self, kind: str) -> None:
        """List-then-watch one kind until stopped.

        1. Retries the initial list with jittered exponential backoff and
           enqueues every listed object.
        2. Opens a streaming watch from the list's ``resourceVersion``.
        3. On ``410 Gone`` re-lists, enqueueing objects whose generation or uid
           moved while disconnected and forgetting ones that vanished, then
           resumes.
        4. On other errors backs off with jitter (capped at 30 s).
        """
        list_fn, list_kwargs = self.store.watch_source(kind, self.namespace)
        resource_version: str | None = None
        backoff_seconds = 1
        while not self._stop.is_set():
            try:
                listing = list_fn(**list_kwargs)
                resource_version = self._enqueue_listing(kind, listing, "ADDED")
                self._mark_listed(kind)
                self.logger.info(
                    "Starting %s watch from resourceVersion %s", kind, resource_version
                )
                break
            except ApiException as exc:
                if self._fatal_api_error(kind, exc, "initial list"):
                    return
                self.logger.exception("Initial list of %s failed", kind)
                METRICS.watch_errors_total.labels(kind=kind).inc()
            except Exception:
                self.logger.exception("Unexpected error during initial list of %s", kind)
                METRICS.watch_errors_total.labels(kind=kind).inc()

            jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
            self._stop.wait(timeout=jittered)
            backoff_seconds = min(backoff_seconds * 2, 30)

        backoff_seconds = 1
        watch_stream_count = 0
        while not self._stop.is_set():
            watcher = watch.Watch()
            with self._state_lock:
                self._active_watchers.add(watcher)
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.labels(kind=kind).inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    list_fn,
                    **list_kwargs,
                    resource_version=resource_version,
                    timeout_seconds=WATCH_TIMEOUT_SECONDS,
                )
                for event in stream:
                    if self._stop.is_set():
                        break
                    obj = event.get("object")
                    if obj is None:
                        continue
                    event_resource_version = _metadata(obj).get("resourceVersion")
                    if event_resource_version:
                        resource_version = event_resource_version
                    self.handle_event(kind, str(event.get("type", "")), obj)
                backoff_seconds = 1
            except ApiException as exc:
                if exc.status == 410:
                    self.logger.warning("%s watch resource version expired, re-listing", kind)
                    try:
                        listing = list_fn(**list_kwargs)
                        resource_version = self._enqueue_listing(
                            kind, listing, "MODIFIED", prune=True
                        )
                    except ApiException as relist_exc:
                        if self._fatal_api_error(kind, relist_exc, "410 re-list"):
                            return
                        self.logger.exception("Failed to re-list %s after 410", kind)
                        METRICS.watch_errors_total.labels(kind=kind).inc()
                        resource_version = None
                    continue

                if self._fatal_api_error(kind, exc, "watch"):
                    return

                self.logger.exception("Kubernetes API watch error for %s", kind)
                METRICS.watch_errors_total.labels(kind=kind).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                self._stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected watch error for %s", kind)
                METRICS.watch_errors_total.labels(kind=kind).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                self._stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._state_lock:
                    self._active_watchers.discard(watcher)

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Start watch and worker threads and block until shutdown.

        Returns when *shutdown_event* is set, :meth:`request_stop` is called,
        or a watch hits an RBAC denial (``fatal`` is set in that case).
        """
        stop = shutdown_event or threading.Event()
        self._stop.clear()
        self.fatal.clear()

        threads = [
            threading.Thread(
                target=self.watch_kind, args=(kind,), name=f"watch-{kind}", daemon=True
            )
            for kind in self.kinds
        ]
        threads.extend(
            threading.Thread(target=self._run_worker, name=f"worker-{index}", daemon=True)
            for index in range(self.workers)
        )
        for thread in threads:
            thread.start()

        while not self._stop.is_set():
            if stop.wait(timeout=0.5):
                break

        self.request_stop()
        for thread in threads:
            thread.join(timeout=WATCH_TIMEOUT_SECONDS)
            if thread.is_alive():
                self.logger.error(
                    "Thread %s did not stop within %ss", thread.name, WATCH_TIMEOUT_SECONDS
                )
        self.ready.clear()
        self.logger.info("Controller stopped")


def build_operator(
    operator_config: OperatorConfig,
    core_api: CoreV1Api,
    custom_api: CustomObjectsApi,
) -> OperatorController:
    """Wire the store, external collaborators and reconcilers into a controller.

    The resource-kind registry is built here, once per process, and shared by
    everything that talks to the API server.
    """
    store = ResourceStore(core_api=core_api, custom_api=custom_api, registry=build_registry())
    reconciler = DeploymentReconciler(
        store=store,
        repo_sync=RepositorySync(
            repo_root=operator_config.repo_root,
            timeout_seconds=operator_config.command_timeout_seconds,
        ),
        connectivity=ConnectivityChecker(
            timeout_seconds=operator_config.connectivity_timeout_seconds,
            skip_services=operator_config.skip_connectivity_services,
        ),
        applier=HelmfileApplier(
            registry_host=operator_config.registry_host,
            kube_context=operator_config.kube_context,
            timeout_seconds=operator_config.command_timeout_seconds,
        ),
        default_helmfile_type=operator_config.default_helmfile_type,
        app_name=operator_config.app_name,
    )
    queue = WorkQueue(
        backoff_base_seconds=operator_config.backoff_base_seconds,
        backoff_max_seconds=operator_config.backoff_max_seconds,
    )
    return OperatorController(
        store=store,
        deployment_reconciler=reconciler,
        rollout_propagator=RolloutPropagator(store),
        queue=queue,
        namespace=operator_config.watch_namespace,
        workers=operator_config.workers,
    )
