from __future__ import annotations

import logging
import os
from collections.abc import Callable
from typing import Any

from kubernetes import client, config
from kubernetes.client import ApiException, CoreV1Api, CustomObjectsApi
from kubernetes.config.config_exception import ConfigException

from pulsepro.src.errors import TransientFetchError
from pulsepro.src.resources import (
    DEPLOYMENT_KIND,
    ROLLOUT_KIND,
    DeploymentRecord,
    ResourceKind,
    RolloutRecord,
)

LOGGER = logging.getLogger(__name__)

SERVICE_ACCOUNT_DIR = "/var/run/secrets/kubernetes.io/serviceaccount"


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def running_in_cluster() -> bool:
    """Return True when a service account token is mounted into this process."""
    return os.path.isdir(SERVICE_ACCOUNT_DIR)


def build_clients() -> tuple[CoreV1Api, CustomObjectsApi]:
    """Return CoreV1 and CustomObjects API clients using the active kube configuration."""
    return client.CoreV1Api(), client.CustomObjectsApi()


class ResourceStore:
    """Typed access to PulsePro custom resources and their values ConfigMaps.

    Reads return freshly decoded records on every call; nothing is cached
    between reconcile passes.  ``get_*`` methods return ``None`` for a 404 and
    raise :class:`TransientFetchError` for any other API failure.  Writes let
    :class:`ApiException` propagate so callers decide whether a failed write
    aborts their pass.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        custom_api: CustomObjectsApi,
        registry: dict[str, ResourceKind],
    ) -> None:
        self.core_api = core_api
        self.custom_api = custom_api
        self.registry = registry

    def kind(self, kind: str) -> ResourceKind:
        try:
            return self.registry[kind]
        except KeyError as exc:
            raise ValueError(f"Unregistered resource kind: {kind}") from exc

    def _get(self, kind: str, namespace: str, name: str) -> Any | None:
        resource = self.kind(kind)
        try:
            raw = self.custom_api.get_namespaced_custom_object(
                group=resource.group,
                version=resource.version,
                namespace=namespace,
                plural=resource.plural,
                name=name,
            )
        except ApiException as exc:
            if exc.status == 404:
                return None
            raise TransientFetchError(
                f"Failed to read {kind} {namespace}/{name}: {exc.reason}"
            ) from exc
        return resource.decode(raw)

    def get_deployment(self, namespace: str, name: str) -> DeploymentRecord | None:
        return self._get(DEPLOYMENT_KIND, namespace, name)

    def get_rollout(self, namespace: str, name: str) -> RolloutRecord | None:
        return self._get(ROLLOUT_KIND, namespace, name)

    def list_deployments(self, namespace: str) -> list[DeploymentRecord]:
        resource = self.kind(DEPLOYMENT_KIND)
        try:
            listing = self.custom_api.list_namespaced_custom_object(
                group=resource.group,
                version=resource.version,
                namespace=namespace,
                plural=resource.plural,
            )
        except ApiException as exc:
            raise TransientFetchError(
                f"Failed to list {DEPLOYMENT_KIND} in {namespace}: {exc.reason}"
            ) from exc
        return [resource.decode(item) for item in listing.get("items") or []]

    def set_deployment_version(self, namespace: str, name: str, version: str) -> None:
        """Merge-patch ``spec.pulseProVersion`` without touching any other field."""
        resource = self.kind(DEPLOYMENT_KIND)
        self.custom_api.patch_namespaced_custom_object(
            group=resource.group,
            version=resource.version,
            namespace=namespace,
            plural=resource.plural,
            name=name,
            body={"spec": {"pulseProVersion": version}},
        )

    def update_deployment_status(self, record: DeploymentRecord) -> None:
        """Write the record's status through the ``/status`` subresource."""
        resource = self.kind(DEPLOYMENT_KIND)
        self.custom_api.patch_namespaced_custom_object_status(
            group=resource.group,
            version=resource.version,
            namespace=record.namespace,
            plural=resource.plural,
            name=record.name,
            body={"status": record.status.to_dict()},
        )

    def update_rollout_phase(self, record: RolloutRecord, phase: str) -> None:
        resource = self.kind(ROLLOUT_KIND)
        self.custom_api.patch_namespaced_custom_object_status(
            group=resource.group,
            version=resource.version,
            namespace=record.namespace,
            plural=resource.plural,
            name=record.name,
            body={"status": {"phase": phase}},
        )
        record.phase = phase

    def get_config_map_value(self, namespace: str, name: str, key: str) -> str:
        """Return one entry of a ConfigMap's ``data``.

        A missing ConfigMap or key is a fetch failure here: the reconciler
        cannot tell an absent values blob from an unreachable one.
        """
        try:
            config_map = self.core_api.read_namespaced_config_map(name=name, namespace=namespace)
        except ApiException as exc:
            raise TransientFetchError(
                f"Failed to read ConfigMap {namespace}/{name}: {exc.reason}"
            ) from exc
        data = getattr(config_map, "data", None) or {}
        if key not in data:
            raise TransientFetchError(f"ConfigMap {namespace}/{name} has no key {key!r}")
        return data[key] or ""

    def watch_source(
        self, kind: str, namespace: str
    ) -> tuple[Callable[..., Any], dict[str, Any]]:
        """Return the list function and arguments used to list/watch *kind*.

        An empty *namespace* lists across the whole cluster.
        """
        resource = self.kind(kind)
        kwargs: dict[str, Any] = {
            "group": resource.group,
            "version": resource.version,
            "plural": resource.plural,
        }
        if namespace:
            kwargs["namespace"] = namespace
            return self.custom_api.list_namespaced_custom_object, kwargs
        return self.custom_api.list_cluster_custom_object, kwargs
