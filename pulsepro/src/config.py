from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path


class ConfigError(RuntimeError):
    """Raised when the operator configuration is invalid."""


@dataclass(frozen=True)
class OperatorConfig:
    """Immutable operator configuration loaded at startup.

    Attributes:
        watch_namespace: Namespace to watch for custom resources; empty
            watches every namespace.
        repo_root: Directory holding one working copy per GitOps repository.
        kube_context: Context passed to helm/helmfile when running outside a
            cluster (local development only).
        registry_host: Private chart registry to log into before each apply;
            empty disables the login step.
        default_helmfile_type: Helmfile topology used when a deployment leaves
            ``helmfileType`` unset.
        app_name: Directory name of the application inside the GitOps tree
            (``environments/<p>-<e>/secrets/<app_name>``, ``helmfiles/<app_name>``).
        workers: Number of reconcile worker threads.
        connectivity_timeout_seconds: Per-service timeout for preflight checks.
        skip_connectivity_services: Services never checked (local clusters).
        command_timeout_seconds: Upper bound for git/helm/helmfile invocations.
        backoff_base_seconds: First retry delay after a failed pass.
        backoff_max_seconds: Retry delay cap.
        health_port: Port for ``/healthz``, ``/readyz`` and ``/metrics``.
    """

    watch_namespace: str = ""
    repo_root: Path = Path("/tmp/repo")  # noqa: S108
    kube_context: str = ""
    registry_host: str = ""
    default_helmfile_type: str = "gke"
    app_name: str = "pulse-pro"
    workers: int = 2
    connectivity_timeout_seconds: int = 5
    skip_connectivity_services: frozenset[str] = frozenset()
    command_timeout_seconds: int = 600
    backoff_base_seconds: int = 1
    backoff_max_seconds: int = 300
    health_port: int = 8081


def env_int(
    values: Mapping[str, str],
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = values.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def _parse_name_list(raw: str | None) -> frozenset[str]:
    if not raw:
        return frozenset()
    return frozenset(part.strip() for part in raw.split(",") if part.strip())


def load_config(env: Mapping[str, str] | None = None) -> OperatorConfig:
    """Load operator config from the environment.

    Every variable is optional; defaults match an in-cluster deployment that
    watches all namespaces.  Raises :class:`ConfigError` on malformed values so
    the process fails at startup instead of on the first reconcile.
    """
    values = env if env is not None else os.environ

    repo_root = values.get("REPO_ROOT", "/tmp/repo").strip()  # noqa: S108
    if not repo_root:
        raise ConfigError("REPO_ROOT must be a non-empty path")

    helmfile_type = values.get("DEFAULT_HELMFILE_TYPE", "gke").strip()
    if not helmfile_type:
        raise ConfigError("DEFAULT_HELMFILE_TYPE must be a non-empty string")

    app_name = values.get("APP_NAME", "pulse-pro").strip()
    if not app_name or "/" in app_name:
        raise ConfigError(f"APP_NAME must be a single path segment, got: {app_name!r}")

    backoff_base = env_int(values, "BACKOFF_BASE_SECONDS", 1, minimum=1)
    backoff_max = env_int(values, "BACKOFF_MAX_SECONDS", 300, minimum=1)
    if backoff_base > backoff_max:
        raise ConfigError("BACKOFF_BASE_SECONDS must not exceed BACKOFF_MAX_SECONDS")

    return OperatorConfig(
        watch_namespace=values.get("WATCH_NAMESPACE", "").strip(),
        repo_root=Path(repo_root),
        kube_context=values.get("KUBE_CONTEXT", "").strip(),
        registry_host=values.get("REGISTRY_HOST", "").strip(),
        default_helmfile_type=helmfile_type,
        app_name=app_name,
        workers=env_int(values, "WORKERS", 2, minimum=1, maximum=64),
        connectivity_timeout_seconds=env_int(
            values, "CONNECTIVITY_TIMEOUT_SECONDS", 5, minimum=1, maximum=60
        ),
        skip_connectivity_services=_parse_name_list(values.get("SKIP_CONNECTIVITY_SERVICES")),
        command_timeout_seconds=env_int(values, "COMMAND_TIMEOUT_SECONDS", 600, minimum=1),
        backoff_base_seconds=backoff_base,
        backoff_max_seconds=backoff_max,
        health_port=env_int(values, "HEALTH_PORT", 8081, minimum=1, maximum=65535),
    )
