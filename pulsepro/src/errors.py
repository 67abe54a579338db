from __future__ import annotations


class PulseProError(Exception):
    """Base class for every error raised by the operator."""


class ConfigurationError(PulseProError):
    """The desired state cannot be applied without human action.

    Raised for gaps such as a missing values file or a working-copy path
    occupied by something that is not a git repository.  The work queue does
    not retry these; the next watch event on the resource starts a fresh pass.
    """


class NotARepositoryError(ConfigurationError):
    """The working-copy path exists but has no ``.git`` metadata."""


class TransientFetchError(PulseProError):
    """The resource store could not return an object the pass depends on."""


class InvalidValuesError(PulseProError):
    """The values ConfigMap does not hold a usable platform values document.

    Retried with backoff: ConfigMaps are not watched, so an edit to the
    document produces no event for the deployment that reads it.
    """


class CommandError(PulseProError):
    """An external command could not be started or did not finish in time."""


class SyncError(PulseProError):
    """Cloning or pulling the GitOps repository failed."""


class RegistryAuthError(PulseProError):
    """Refreshing credentials for the private chart registry failed."""


class ApplyError(PulseProError):
    """The release tool exited with a failure status."""


class ConnectivityError(PulseProError):
    """A dependent service did not answer the preflight check."""

    def __init__(self, service: str, address: str, reason: str) -> None:
        super().__init__(f"failed to connect to {service} ({address}): {reason}")
        self.service = service
        self.address = address
        self.reason = reason


class ReconcileCancelled(PulseProError):
    """The stop signal was set while a pass was in progress."""
