from __future__ import annotations

import logging
import shlex
from collections.abc import Callable, Sequence
from pathlib import Path

from pulsepro.src.commands import command_output, run_command
from pulsepro.src.errors import ApplyError, CommandError, ConfigurationError, RegistryAuthError
from pulsepro.src.kube import running_in_cluster

LOGGER = logging.getLogger(__name__)

REGISTRY_USERNAME = "oauth2accesstoken"


def release_name(project: str, environment: str) -> str:
    """Return the deterministic release/helmfile environment name ``{project}-{environment}``."""
    return f"{project}-{environment}"


class _ReleaseTool:
    """Shared plumbing for helm and helmfile invocations.

    Registry credentials are short-lived, so they are refreshed right before
    every invocation rather than once at startup.
    """

    def __init__(
        self,
        registry_host: str = "",
        kube_context: str = "",
        timeout_seconds: float = 600,
        in_cluster: Callable[[], bool] = running_in_cluster,
    ) -> None:
        self.registry_host = registry_host
        self.kube_context = kube_context
        self.timeout_seconds = timeout_seconds
        self.in_cluster = in_cluster

    def _context_args(self, kube_context: str | None = None) -> list[str]:
        context = kube_context if kube_context is not None else self.kube_context
        if not context or self.in_cluster():
            return []
        return ["--kube-context", context]

    def refresh_registry_login(self) -> None:
        """Log helm into the private chart registry with a fresh gcloud token."""
        if not self.registry_host:
            return
        try:
            token = run_command(
                ["gcloud", "auth", "print-access-token"], timeout=self.timeout_seconds
            )
            if token.returncode != 0:
                raise RegistryAuthError(
                    f"failed to get access token from gcloud: {command_output(token)}"
                )
            login = run_command(
                [
                    "helm",
                    "registry",
                    "login",
                    "-u",
                    REGISTRY_USERNAME,
                    "--password-stdin",
                    self.registry_host,
                ],
                timeout=self.timeout_seconds,
                stdin=token.stdout.strip(),
            )
        except CommandError as exc:
            raise RegistryAuthError(str(exc)) from exc
        if login.returncode != 0:
            raise RegistryAuthError(
                f"helm registry login to {self.registry_host} failed: {command_output(login)}"
            )
        LOGGER.info("Logged into Helm registry %s", self.registry_host)

    def _run(self, tool: str, args: list[str]) -> str:
        LOGGER.info("Executing %s %s", tool, shlex.join(args))
        try:
            result = run_command([tool, *args], timeout=self.timeout_seconds)
        except CommandError as exc:
            raise ApplyError(str(exc)) from exc
        output = command_output(result)
        if result.returncode != 0:
            LOGGER.error("%s failed (exit %d): %s", tool, result.returncode, output)
            raise ApplyError(f"{tool} failed (exit {result.returncode}): {output}")
        LOGGER.info("%s succeeded: %s", tool, output)
        return output


class HelmfileApplier(_ReleaseTool):
    """Apply every release of one project/environment with ``helmfile sync``."""

    def sync(self, helmfile_path: Path, environment: str) -> str:
        if not helmfile_path.is_file():
            raise ConfigurationError(f"helmfile does not exist: {helmfile_path}")

        self.refresh_registry_login()
        args = ["-f", str(helmfile_path), "--environment", environment, "sync"]
        args.extend(self._context_args())
        return self._run("helmfile", args)


class HelmReleaseApplier(_ReleaseTool):
    """Create or upgrade a single release with ``helm upgrade --install``.

    Library entry point for applying one chart outside a helmfile; the
    reconcile loop goes through :class:`HelmfileApplier` and never builds one.
    """

    def apply_release(
        self,
        name: str,
        chart_ref: str,
        chart_version: str,
        values_paths: Sequence[Path],
        kube_context: str | None = None,
    ) -> str:
        """Install or upgrade *name* from *chart_ref* at *chart_version*.

        Values files are passed in order, later files overriding earlier ones.
        All of them must exist; nothing is invoked otherwise.
        """
        missing = [str(path) for path in values_paths if not path.is_file()]
        if missing:
            raise ConfigurationError(f"values file(s) do not exist: {', '.join(missing)}")

        self.refresh_registry_login()
        args = ["upgrade", "--install", name, chart_ref]
        if chart_version:
            args.extend(["--version", chart_version])
        for path in values_paths:
            args.extend(["--values", str(path)])
        args.extend(self._context_args(kube_context))
        return self._run("helm", args)
