from __future__ import annotations

import enum
import logging
import re
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from kubernetes.client import ApiException

from pulsepro.src.applier import HelmfileApplier, release_name
from pulsepro.src.connectivity import ConnectivityChecker
from pulsepro.src.errors import (
    ApplyError,
    ConfigurationError,
    ConnectivityError,
    InvalidValuesError,
    PulseProError,
    ReconcileCancelled,
    TransientFetchError,
)
from pulsepro.src.gitsync import RepositorySync
from pulsepro.src.kube import ResourceStore
from pulsepro.src.metrics import METRICS
from pulsepro.src.resources import (
    STATUS_CONFIGMAP_FETCH_FAILED,
    STATUS_FAILED,
    STATUS_HELMFILE_SYNC_FAILED,
    STATUS_SECRETS_MISSING,
    DeploymentRecord,
)
from pulsepro.src.values import PlatformValues, parse_values

LOGGER = logging.getLogger(__name__)

DEFAULT_REQUEUE_SECONDS = 600.0

_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "μs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART = re.compile(r"(\d+\.?\d*|\.\d+)(ns|us|µs|μs|ms|s|m|h)")


def parse_duration(value: str) -> float | None:
    """Parse a Go-style duration (``90s``, ``1h30m``, ``1.5h``) into seconds.

    Returns ``None`` for empty or malformed input.  A bare ``0`` is zero.
    """
    text = value.strip()
    if not text:
        return None
    sign = 1.0
    if text[0] in "+-":
        sign = -1.0 if text[0] == "-" else 1.0
        text = text[1:]
    if text == "0":
        return 0.0

    total = 0.0
    position = 0
    while position < len(text):
        match = _DURATION_PART.match(text, position)
        if match is None:
            return None
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()
    if position == 0:
        return None
    return sign * total


def requeue_interval(sync_interval: str) -> float:
    """Return the requeue delay for a successful pass.

    Falls back to 10 minutes when ``syncInterval`` is empty, malformed or not
    positive.
    """
    seconds = parse_duration(sync_interval)
    if seconds is None or seconds <= 0:
        return DEFAULT_REQUEUE_SECONDS
    return seconds


def utc_now_rfc3339() -> str:
    """Return the current UTC time as a compact RFC 3339 string (e.g. ``2024-01-15T08:30:00Z``)."""
    return datetime.now(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


class Stage(enum.Enum):
    IDLE = "Idle"
    FETCHING = "Fetching"
    SYNCING = "Syncing"
    CHECKING_CONNECTIVITY = "CheckingConnectivity"
    APPLYING = "Applying"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of a pass that did not raise.

    ``requeue_after`` is the delay in seconds before the next scheduled pass,
    or ``None`` when the key should wait for the next watch event.
    """

    requeue_after: float | None = None
    stage: Stage = Stage.IDLE


@dataclass(frozen=True)
class RepositoryPaths:
    secrets_file: Path
    helmfile: Path


class DeploymentReconciler:
    """Drive one ``PulseProDeployment`` toward its desired state.

    A pass runs Fetching → Syncing → CheckingConnectivity → Applying and ends
    Succeeded or Failed.  Every failure is written to ``status.status`` before
    the pass ends.  How the pass ends depends on the failure class:

    * record gone: return without requeue and without a status write;
    * ConfigMap fetch, repository sync, registry login and apply failures:
      raise, leaving retry timing to the work queue;
    * dependent service unreachable: return with the default requeue;
    * encrypted secrets file missing: return without requeue.

    The record is re-read on every pass and never cached.
    """

    def __init__(
        self,
        store: ResourceStore,
        repo_sync: RepositorySync,
        connectivity: ConnectivityChecker,
        applier: HelmfileApplier,
        default_helmfile_type: str = "gke",
        app_name: str = "pulse-pro",
        now_fn: Callable[[], str] = utc_now_rfc3339,
    ) -> None:
        self.store = store
        self.repo_sync = repo_sync
        self.connectivity = connectivity
        self.applier = applier
        self.default_helmfile_type = default_helmfile_type
        self.app_name = app_name
        self.now_fn = now_fn

    def resolve_paths(self, record: DeploymentRecord, repo_path: Path) -> RepositoryPaths:
        """Locate the secrets file and helmfile for *record* inside the working copy."""
        spec = record.spec
        environment_dir = repo_path / "environments" / release_name(
            spec.project_name, spec.environment_name
        )
        helmfile_type = spec.helmfile_type or self.default_helmfile_type
        return RepositoryPaths(
            secrets_file=environment_dir / "secrets" / self.app_name / "secrets.yaml.dec",
            helmfile=repo_path / "helmfiles" / self.app_name / helmfile_type / "helmfile.yaml",
        )

    @staticmethod
    def _enter(stage: Stage, key: str, stop: threading.Event | None) -> None:
        if stop is not None and stop.is_set():
            LOGGER.info("Reconcile of %s cancelled before %s", key, stage.value)
            raise ReconcileCancelled(f"reconcile of {key} cancelled before {stage.value}")
        LOGGER.debug("Reconcile of %s entering %s", key, stage.value)

    def _write_status(self, record: DeploymentRecord) -> None:
        self.store.update_deployment_status(record)
        METRICS.deployment_status_total.labels(status=record.status.status).inc()

    def _fail(self, record: DeploymentRecord, status: str) -> None:
        """Record a failure status.  A failed write is logged, not raised."""
        record.status.status = status
        try:
            self._write_status(record)
        except ApiException:
            LOGGER.exception("Failed to update status of %s to %r", record.key, status)

    def reconcile(
        self, namespace: str, name: str, stop: threading.Event | None = None
    ) -> ReconcileResult:
        key = f"{namespace}/{name}"

        self._enter(Stage.FETCHING, key, stop)
        record = self.store.get_deployment(namespace, name)
        if record is None:
            LOGGER.info("PulseProDeployment %s no longer exists; nothing to reconcile", key)
            return ReconcileResult()

        values = self._fetch_values(record)

        self._enter(Stage.SYNCING, key, stop)
        repo_path = self.repo_sync.working_copy_path(record.spec.git_repo_url)
        try:
            self.repo_sync.sync(record.spec.git_repo_url, repo_path)
        except PulseProError:
            LOGGER.exception("GitOps sync failed for %s", key)
            self._fail(record, STATUS_FAILED)
            raise

        self._enter(Stage.CHECKING_CONNECTIVITY, key, stop)
        try:
            self.connectivity.check(values)
        except ConnectivityError as exc:
            LOGGER.warning("Dependent service check failed for %s: %s", key, exc)
            self._fail(record, STATUS_FAILED)
            return ReconcileResult(requeue_after=DEFAULT_REQUEUE_SECONDS, stage=Stage.FAILED)

        self._enter(Stage.APPLYING, key, stop)
        result = self._apply(record, repo_path)
        if result is not None:
            return result

        ref = record.spec.helm_values_config_map
        record.status.record_applied(
            version=record.spec.pulse_pro_version,
            applied_config=f"{ref.name}/{ref.key}",
            timestamp=self.now_fn(),
        )
        self._write_status(record)
        delay = requeue_interval(record.spec.sync_interval)
        LOGGER.info(
            "PulseProDeployment %s synced at version %s; next sync in %.0fs",
            key,
            record.status.current_version,
            delay,
        )
        return ReconcileResult(requeue_after=delay, stage=Stage.SUCCEEDED)

    def _fetch_values(self, record: DeploymentRecord) -> PlatformValues:
        ref = record.spec.helm_values_config_map
        try:
            document = self.store.get_config_map_value(record.namespace, ref.name, ref.key)
        except TransientFetchError:
            LOGGER.exception("Unable to fetch ConfigMap %s for %s", ref.name, record.key)
            self._fail(record, STATUS_CONFIGMAP_FETCH_FAILED)
            raise

        try:
            return parse_values(document)
        except InvalidValuesError:
            LOGGER.exception("Failed to load platform values for %s", record.key)
            self._fail(record, STATUS_FAILED)
            raise

    def _apply(self, record: DeploymentRecord, repo_path: Path) -> ReconcileResult | None:
        """Run the helmfile sync.  Returns a result only when the pass ends here without error."""
        spec = record.spec
        if not spec.project_name or not spec.environment_name:
            self._fail(record, STATUS_FAILED)
            raise ConfigurationError(
                f"{record.key} must set both projectName and environmentName"
            )

        paths = self.resolve_paths(record, repo_path)
        if not paths.secrets_file.is_file():
            LOGGER.error(
                "Encrypted secrets file for %s does not exist: %s", record.key, paths.secrets_file
            )
            self._fail(record, STATUS_SECRETS_MISSING)
            return ReconcileResult(stage=Stage.FAILED)

        try:
            self.applier.sync(
                paths.helmfile, release_name(spec.project_name, spec.environment_name)
            )
        except ApplyError:
            LOGGER.exception("Helmfile sync failed for %s", record.key)
            self._fail(record, STATUS_HELMFILE_SYNC_FAILED)
            raise
        except PulseProError:
            LOGGER.exception("Could not apply %s", record.key)
            self._fail(record, STATUS_FAILED)
            raise
        return None
