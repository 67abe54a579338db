from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

GROUP = "pulsepro.io"
VERSION = "v1alpha1"

STATUS_SYNCED = "Synced"
STATUS_FAILED = "Failed"
STATUS_CONFIGMAP_FETCH_FAILED = "Failed to fetch ConfigMap"
STATUS_SECRETS_MISSING = "Encrypted secrets file missing"
STATUS_HELMFILE_SYNC_FAILED = "Helmfile sync failed"

ROLLOUT_PHASE_COMPLETED = "Completed"


def _str(value: Any) -> str:
    return "" if value is None else str(value)


def _str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item) for item in value if item is not None]


def _mapping(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


@dataclass(frozen=True)
class ObjectRef:
    """A ``{name, key}`` reference to one entry of a ConfigMap or Secret."""

    name: str = ""
    key: str = ""

    @classmethod
    def from_dict(cls, raw: Any) -> ObjectRef:
        data = _mapping(raw)
        return cls(name=_str(data.get("name")), key=_str(data.get("key")))

    def to_dict(self) -> dict[str, str]:
        return {"name": self.name, "key": self.key}


@dataclass(frozen=True)
class DeploymentSpec:
    """Desired state of one PulsePro application instance."""

    pulse_pro_version: str = ""
    helm_chart: str = ""
    helm_chart_version: str = ""
    helm_values_config_map: ObjectRef = field(default_factory=ObjectRef)
    secrets: tuple[ObjectRef, ...] = ()
    project_name: str = ""
    environment_name: str = ""
    git_repo_url: str = ""
    sync_interval: str = ""
    helmfile_type: str = ""
    tags: tuple[str, ...] = ()
    category: str = ""

    @classmethod
    def from_dict(cls, raw: Any) -> DeploymentSpec:
        data = _mapping(raw)
        secrets = data.get("secrets")
        return cls(
            pulse_pro_version=_str(data.get("pulseProVersion")),
            helm_chart=_str(data.get("helmChart")),
            helm_chart_version=_str(data.get("helmChartVersion")),
            helm_values_config_map=ObjectRef.from_dict(data.get("helmValuesConfigMap")),
            secrets=tuple(
                ObjectRef.from_dict(item) for item in (secrets if isinstance(secrets, list) else [])
            ),
            project_name=_str(data.get("projectName")),
            environment_name=_str(data.get("environmentName")),
            git_repo_url=_str(data.get("gitRepoURL")),
            sync_interval=_str(data.get("syncInterval")),
            helmfile_type=_str(data.get("helmfileType")),
            tags=tuple(_str_list(data.get("tags"))),
            category=_str(data.get("category")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "pulseProVersion": self.pulse_pro_version,
            "helmChart": self.helm_chart,
            "helmChartVersion": self.helm_chart_version,
            "helmValuesConfigMap": self.helm_values_config_map.to_dict(),
            "secrets": [ref.to_dict() for ref in self.secrets],
            "projectName": self.project_name,
            "environmentName": self.environment_name,
            "gitRepoURL": self.git_repo_url,
            "syncInterval": self.sync_interval,
            "helmfileType": self.helmfile_type,
            "tags": list(self.tags),
            "category": self.category,
        }


@dataclass
class DeploymentStatus:
    """Observed state written back by the reconciler after every pass."""

    status: str = ""
    current_version: str = ""
    previous_version: str = ""
    last_applied_config: str = ""
    last_sync_time: str = ""
    rollback_in_progress: bool = False

    @classmethod
    def from_dict(cls, raw: Any) -> DeploymentStatus:
        data = _mapping(raw)
        return cls(
            status=_str(data.get("status")),
            current_version=_str(data.get("currentVersion")),
            previous_version=_str(data.get("previousVersion")),
            last_applied_config=_str(data.get("lastAppliedConfig")),
            last_sync_time=_str(data.get("lastSyncTime")),
            rollback_in_progress=bool(data.get("rollbackInProgress", False)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "currentVersion": self.current_version,
            "previousVersion": self.previous_version,
            "lastAppliedConfig": self.last_applied_config,
            "lastSyncTime": self.last_sync_time,
            "rollbackInProgress": self.rollback_in_progress,
        }

    def record_applied(self, version: str, applied_config: str, timestamp: str) -> None:
        """Rotate versions after a successful apply.

        ``previous_version`` only moves when the version actually changes, so
        periodic re-syncs of the same version keep the rollback target intact.
        Moving back to the recorded previous version is flagged as a rollback.
        """
        if version != self.current_version:
            self.rollback_in_progress = bool(version) and version == self.previous_version
            if self.current_version:
                self.previous_version = self.current_version
            self.current_version = version
        else:
            self.rollback_in_progress = False
        self.status = STATUS_SYNCED
        self.last_applied_config = applied_config
        self.last_sync_time = timestamp


@dataclass
class DeploymentRecord:
    """A ``PulseProDeployment`` custom resource as seen in one reconcile pass."""

    namespace: str
    name: str
    spec: DeploymentSpec = field(default_factory=DeploymentSpec)
    status: DeploymentStatus = field(default_factory=DeploymentStatus)
    generation: int = 0
    resource_version: str = ""

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> DeploymentRecord:
        metadata = _mapping(raw.get("metadata"))
        return cls(
            namespace=_str(metadata.get("namespace")),
            name=_str(metadata.get("name")),
            spec=DeploymentSpec.from_dict(raw.get("spec")),
            status=DeploymentStatus.from_dict(raw.get("status")),
            generation=int(metadata.get("generation") or 0),
            resource_version=_str(metadata.get("resourceVersion")),
        )


@dataclass(frozen=True)
class RolloutSpec:
    """Fleet-wide version change: which deployments, and to what version."""

    namespace: str = ""
    environments: tuple[str, ...] = ()
    tags: tuple[str, ...] = ()
    category: str = ""
    image_version: str = ""

    @classmethod
    def from_dict(cls, raw: Any) -> RolloutSpec:
        data = _mapping(raw)
        return cls(
            namespace=_str(data.get("namespace")),
            environments=tuple(_str_list(data.get("environments"))),
            tags=tuple(_str_list(data.get("tags"))),
            category=_str(data.get("category")),
            image_version=_str(data.get("imageVersion")),
        )


@dataclass
class RolloutRecord:
    """A ``PulseProRollout`` custom resource."""

    namespace: str
    name: str
    spec: RolloutSpec = field(default_factory=RolloutSpec)
    phase: str = ""
    generation: int = 0

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    @property
    def target_namespace(self) -> str:
        """Namespace swept by the rollout; defaults to the rollout's own."""
        return self.spec.namespace or self.namespace

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> RolloutRecord:
        metadata = _mapping(raw.get("metadata"))
        return cls(
            namespace=_str(metadata.get("namespace")),
            name=_str(metadata.get("name")),
            spec=RolloutSpec.from_dict(raw.get("spec")),
            phase=_str(_mapping(raw.get("status")).get("phase")),
            generation=int(metadata.get("generation") or 0),
        )


@dataclass(frozen=True)
class ResourceKind:
    """How to address and decode one custom resource type."""

    kind: str
    plural: str
    decode: Callable[[dict[str, Any]], Any]
    group: str = GROUP
    version: str = VERSION


DEPLOYMENT_KIND = "PulseProDeployment"
ROLLOUT_KIND = "PulseProRollout"


def build_registry() -> dict[str, ResourceKind]:
    """Return the kind registry handed to :class:`~pulsepro.src.kube.ResourceStore`.

    Built once at startup; callers pass it explicitly rather than reaching for
    module state.
    """
    kinds = (
        ResourceKind(
            kind=DEPLOYMENT_KIND,
            plural="pulseprodeployments",
            decode=DeploymentRecord.from_dict,
        ),
        ResourceKind(
            kind=ROLLOUT_KIND,
            plural="pulseprorollouts",
            decode=RolloutRecord.from_dict,
        ),
    )
    return {kind.kind: kind for kind in kinds}
