from __future__ import annotations

import logging
import shlex
import subprocess
from collections.abc import Sequence
from pathlib import Path

from pulsepro.src.errors import CommandError

LOGGER = logging.getLogger(__name__)


def run_command(
    args: Sequence[str],
    *,
    timeout: float,
    cwd: Path | None = None,
    stdin: str | None = None,
) -> subprocess.CompletedProcess[str]:
    """Run an external tool and return the completed process.

    A non-zero exit is returned to the caller, which owns the decision about
    what that status means.  Only a missing binary or a timeout raise
    :class:`CommandError`.
    """
    LOGGER.debug("Executing %s", shlex.join(args))
    try:
        return subprocess.run(  # noqa: S603
            list(args),
            cwd=str(cwd) if cwd is not None else None,
            input=stdin,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except FileNotFoundError as exc:
        raise CommandError(f"{args[0]} is not installed or not on PATH") from exc
    except subprocess.TimeoutExpired as exc:
        raise CommandError(f"{args[0]} did not finish within {timeout}s") from exc


def command_output(result: subprocess.CompletedProcess[str]) -> str:
    """Return stdout and stderr joined for diagnostics."""
    parts = [part.strip() for part in (result.stdout, result.stderr) if part and part.strip()]
    return "\n".join(parts)
