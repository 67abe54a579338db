from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass

from kubernetes.client import ApiException

from pulsepro.src.errors import ConfigurationError, TransientFetchError
from pulsepro.src.kube import ResourceStore
from pulsepro.src.metrics import METRICS
from pulsepro.src.resources import ROLLOUT_PHASE_COMPLETED, DeploymentRecord, RolloutRecord

LOGGER = logging.getLogger(__name__)


def matches_tags(deployment_tags: Iterable[str], rollout_tags: Iterable[str]) -> bool:
    """Return True when every rollout tag is present on the deployment.

    An empty rollout tag filter matches every deployment.
    """
    required = set(rollout_tags)
    if not required:
        return True
    return required <= set(deployment_tags)


def matches_category(deployment_category: str, rollout_category: str) -> bool:
    """Return True when the rollout category is empty or equals the deployment's."""
    if not rollout_category:
        return True
    return deployment_category == rollout_category


@dataclass(frozen=True)
class RolloutResult:
    """Immutable summary of one rollout sweep."""

    rollout: str
    matched: int
    updated: int
    already_current: int
    skipped: int
    failed: int


class RolloutPropagator:
    """Retarget every deployment selected by a ``PulseProRollout``.

    Each pass is a complete sweep.  Deployments already at the target version
    are left untouched, so repeating a pass performs no writes.  A failed
    update is logged and counted but never stops the sweep; only the final
    rollout status write fails the pass.
    """

    def __init__(self, store: ResourceStore) -> None:
        self.store = store

    def _candidates(self, rollout: RolloutRecord) -> tuple[list[DeploymentRecord], int]:
        """Return the deployments to evaluate and the number of named ones not found."""
        namespace = rollout.target_namespace
        if not rollout.spec.environments:
            return self.store.list_deployments(namespace), 0

        candidates: list[DeploymentRecord] = []
        missing = 0
        for deployment_name in rollout.spec.environments:
            try:
                deployment = self.store.get_deployment(namespace, deployment_name)
            except TransientFetchError:
                LOGGER.exception(
                    "Error fetching PulseProDeployment %s/%s", namespace, deployment_name
                )
                missing += 1
                continue
            if deployment is None:
                LOGGER.warning(
                    "PulseProDeployment %s/%s named by rollout %s does not exist",
                    namespace,
                    deployment_name,
                    rollout.key,
                )
                missing += 1
                continue
            candidates.append(deployment)
        return candidates, missing

    def reconcile(self, namespace: str, name: str) -> RolloutResult | None:
        rollout = self.store.get_rollout(namespace, name)
        if rollout is None:
            LOGGER.info("PulseProRollout %s/%s no longer exists", namespace, name)
            return None

        target_version = rollout.spec.image_version
        if not target_version:
            raise ConfigurationError(f"PulseProRollout {rollout.key} has no imageVersion")

        candidates, skipped = self._candidates(rollout)
        matched = updated = already_current = failed = 0

        for deployment in candidates:
            if not (
                matches_tags(deployment.spec.tags, rollout.spec.tags)
                and matches_category(deployment.spec.category, rollout.spec.category)
            ):
                LOGGER.debug(
                    "Skipping %s for rollout %s: tags or category do not match",
                    deployment.key,
                    rollout.key,
                )
                skipped += 1
                continue

            matched += 1
            if deployment.spec.pulse_pro_version == target_version:
                LOGGER.info("%s is already at version %s", deployment.key, target_version)
                already_current += 1
                METRICS.rollout_updates_total.labels(result="already_current").inc()
                continue

            LOGGER.info(
                "Updating %s from version %s to %s",
                deployment.key,
                deployment.spec.pulse_pro_version or "<unset>",
                target_version,
            )
            try:
                self.store.set_deployment_version(
                    deployment.namespace, deployment.name, target_version
                )
            except ApiException:
                failed += 1
                METRICS.rollout_updates_total.labels(result="failed").inc()
                LOGGER.exception("Failed to update PulseProDeployment %s", deployment.key)
                continue
            updated += 1
            METRICS.rollout_updates_total.labels(result="updated").inc()

        self.store.update_rollout_phase(rollout, ROLLOUT_PHASE_COMPLETED)
        result = RolloutResult(
            rollout=rollout.key,
            matched=matched,
            updated=updated,
            already_current=already_current,
            skipped=skipped,
            failed=failed,
        )
        LOGGER.info(
            "Rollout %s to %s completed: matched=%d updated=%d already_current=%d "
            "skipped=%d failed=%d",
            rollout.key,
            target_version,
            matched,
            updated,
            already_current,
            skipped,
            failed,
        )
        return result
