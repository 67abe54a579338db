from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Any
from unittest.mock import patch

import pytest

from pulsepro.src.applier import (
    REGISTRY_USERNAME,
    HelmfileApplier,
    HelmReleaseApplier,
    release_name,
)
from pulsepro.src.errors import ApplyError, CommandError, ConfigurationError, RegistryAuthError


class FakeRunner:
    """Records every command and answers with scripted results per tool."""

    def __init__(
        self, results: dict[str, subprocess.CompletedProcess[str]] | None = None
    ) -> None:
        self.results = results or {}
        self.calls: list[tuple[list[str], dict[str, Any]]] = []

    def __call__(self, args: list[str], **kwargs: Any) -> subprocess.CompletedProcess[str]:
        self.calls.append((list(args), kwargs))
        return self.results.get(
            args[0], subprocess.CompletedProcess(args=args, returncode=0, stdout="ok", stderr="")
        )

    @property
    def tools(self) -> list[str]:
        return [args[0] for args, _ in self.calls]


def _failed(stderr: str) -> subprocess.CompletedProcess[str]:
    return subprocess.CompletedProcess(args=[], returncode=1, stdout="", stderr=stderr)


@pytest.fixture
def helmfile(tmp_path: Path) -> Path:
    path = tmp_path / "helmfiles" / "pulse-pro" / "gke" / "helmfile.yaml"
    path.parent.mkdir(parents=True)
    path.write_text("releases: []\n", encoding="utf-8")
    return path


def test_release_name_joins_project_and_environment() -> None:
    assert release_name("acme", "prod") == "acme-prod"


def test_helmfile_sync_runs_expected_command(helmfile: Path) -> None:
    runner = FakeRunner()
    applier = HelmfileApplier(timeout_seconds=42, in_cluster=lambda: True)

    with patch("pulsepro.src.applier.run_command", side_effect=runner):
        applier.sync(helmfile, "acme-prod")

    args, kwargs = runner.calls[-1]
    assert args == ["helmfile", "-f", str(helmfile), "--environment", "acme-prod", "sync"]
    assert kwargs["timeout"] == 42


def test_helmfile_sync_adds_kube_context_outside_cluster(helmfile: Path) -> None:
    runner = FakeRunner()
    applier = HelmfileApplier(kube_context="kind-dev", in_cluster=lambda: False)

    with patch("pulsepro.src.applier.run_command", side_effect=runner):
        applier.sync(helmfile, "acme-prod")

    assert runner.calls[-1][0][-2:] == ["--kube-context", "kind-dev"]


def test_helmfile_sync_ignores_kube_context_in_cluster(helmfile: Path) -> None:
    runner = FakeRunner()
    applier = HelmfileApplier(kube_context="kind-dev", in_cluster=lambda: True)

    with patch("pulsepro.src.applier.run_command", side_effect=runner):
        applier.sync(helmfile, "acme-prod")

    assert "--kube-context" not in runner.calls[-1][0]


def test_helmfile_sync_refreshes_registry_login_first(helmfile: Path) -> None:
    runner = FakeRunner(
        {
            "gcloud": subprocess.CompletedProcess(
                args=[], returncode=0, stdout="ya29.token\n", stderr=""
            )
        }
    )
    applier = HelmfileApplier(registry_host="europe-docker.pkg.dev", in_cluster=lambda: True)

    with patch("pulsepro.src.applier.run_command", side_effect=runner):
        applier.sync(helmfile, "acme-prod")

    assert runner.tools == ["gcloud", "helm", "helmfile"]
    login_args, login_kwargs = runner.calls[1]
    assert login_args == [
        "helm",
        "registry",
        "login",
        "-u",
        REGISTRY_USERNAME,
        "--password-stdin",
        "europe-docker.pkg.dev",
    ]
    assert login_kwargs["stdin"] == "ya29.token"


def test_registry_login_failure_skips_apply(helmfile: Path) -> None:
    runner = FakeRunner({"gcloud": _failed("You do not currently have an active account")})
    applier = HelmfileApplier(registry_host="europe-docker.pkg.dev", in_cluster=lambda: True)

    with (
        patch("pulsepro.src.applier.run_command", side_effect=runner),
        pytest.raises(RegistryAuthError, match="active account"),
    ):
        applier.sync(helmfile, "acme-prod")

    assert runner.tools == ["gcloud"]


def test_helm_registry_login_rejection(helmfile: Path) -> None:
    runner = FakeRunner({"helm": _failed("unauthorized")})
    applier = HelmfileApplier(registry_host="europe-docker.pkg.dev", in_cluster=lambda: True)

    with (
        patch("pulsepro.src.applier.run_command", side_effect=runner),
        pytest.raises(RegistryAuthError, match="unauthorized"),
    ):
        applier.sync(helmfile, "acme-prod")


def test_helmfile_failure_raises_apply_error_with_output(helmfile: Path) -> None:
    runner = FakeRunner({"helmfile": _failed("Error: UPGRADE FAILED: timed out")})
    applier = HelmfileApplier(in_cluster=lambda: True)

    with (
        patch("pulsepro.src.applier.run_command", side_effect=runner),
        pytest.raises(ApplyError, match="UPGRADE FAILED"),
    ):
        applier.sync(helmfile, "acme-prod")


def test_helmfile_missing_binary_is_apply_error(helmfile: Path) -> None:
    applier = HelmfileApplier(in_cluster=lambda: True)

    with (
        patch(
            "pulsepro.src.applier.run_command",
            side_effect=CommandError("helmfile is not installed or not on PATH"),
        ),
        pytest.raises(ApplyError, match="not installed"),
    ):
        applier.sync(helmfile, "acme-prod")


def test_helmfile_sync_requires_helmfile(tmp_path: Path) -> None:
    applier = HelmfileApplier(in_cluster=lambda: True)

    with (
        patch("pulsepro.src.applier.run_command") as mock_run,
        pytest.raises(ConfigurationError, match="helmfile does not exist"),
    ):
        applier.sync(tmp_path / "missing.yaml", "acme-prod")

    mock_run.assert_not_called()


def test_apply_release_runs_helm_upgrade_install(tmp_path: Path) -> None:
    base = tmp_path / "values.yaml"
    override = tmp_path / "values-prod.yaml"
    base.write_text("replicas: 1\n", encoding="utf-8")
    override.write_text("replicas: 3\n", encoding="utf-8")
    runner = FakeRunner()
    applier = HelmReleaseApplier(kube_context="prod-cluster", in_cluster=lambda: False)

    with patch("pulsepro.src.applier.run_command", side_effect=runner):
        applier.apply_release(
            "acme-prod", "oci://registry/pulse-pro", "1.8.2", [base, override]
        )

    assert runner.calls[-1][0] == [
        "helm",
        "upgrade",
        "--install",
        "acme-prod",
        "oci://registry/pulse-pro",
        "--version",
        "1.8.2",
        "--values",
        str(base),
        "--values",
        str(override),
        "--kube-context",
        "prod-cluster",
    ]


def test_apply_release_explicit_context_overrides_default(tmp_path: Path) -> None:
    values = tmp_path / "values.yaml"
    values.write_text("{}\n", encoding="utf-8")
    runner = FakeRunner()
    applier = HelmReleaseApplier(kube_context="prod-cluster", in_cluster=lambda: False)

    with patch("pulsepro.src.applier.run_command", side_effect=runner):
        applier.apply_release("acme-dev", "pulse/pulse-pro", "", [values], kube_context="dev")

    args = runner.calls[-1][0]
    assert "--version" not in args
    assert args[-2:] == ["--kube-context", "dev"]


def test_apply_release_with_missing_values_file_invokes_nothing(tmp_path: Path) -> None:
    present = tmp_path / "values.yaml"
    present.write_text("{}\n", encoding="utf-8")
    applier = HelmReleaseApplier(registry_host="europe-docker.pkg.dev")

    with (
        patch("pulsepro.src.applier.run_command") as mock_run,
        pytest.raises(ConfigurationError, match="values-prod.yaml"),
    ):
        applier.apply_release(
            "acme-prod", "pulse/pulse-pro", "1.0.0", [present, tmp_path / "values-prod.yaml"]
        )

    mock_run.assert_not_called()
