from __future__ import annotations

import logging
import urllib.error
import urllib.parse
import urllib.request
from collections.abc import Iterable

from pulsepro.src.commands import command_output, run_command
from pulsepro.src.errors import CommandError, ConnectivityError
from pulsepro.src.metrics import METRICS
from pulsepro.src.values import CHECK_HTTP, PlatformValues, ServiceEndpoint

LOGGER = logging.getLogger(__name__)


def sanitize_host(address: str) -> str:
    """Strip scheme, port and path so *address* can be pinged."""
    if "://" in address:
        return urllib.parse.urlsplit(address).hostname or ""
    host, separator, port = address.rpartition(":")
    if separator and port.isdigit() and ":" not in host:
        return host
    return address


def http_url(address: str) -> str:
    if "://" in address:
        return address
    return f"http://{address}"


class ConnectivityChecker:
    """Preflight check of the dependent services named in the platform values.

    HTTP services must answer ``200`` after redirects; network services must
    answer a single ping.  Services with no configured address, or listed in
    ``skip_services``, are skipped.  The first failure raises
    :class:`ConnectivityError` and the remaining services are not checked.
    """

    def __init__(
        self,
        timeout_seconds: float = 5,
        skip_services: Iterable[str] = (),
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.skip_services = {name.lower() for name in skip_services}

    def check(self, values: PlatformValues) -> None:
        for endpoint in values.endpoints:
            if not endpoint.address:
                LOGGER.info(
                    "Skipping connectivity check for %s: no address configured",
                    endpoint.service,
                )
                continue
            if endpoint.service.lower() in self.skip_services:
                LOGGER.info("Skipping connectivity check for %s by configuration", endpoint.service)
                continue

            try:
                if endpoint.method == CHECK_HTTP:
                    self._check_http(endpoint)
                else:
                    self._check_network(endpoint)
            except ConnectivityError:
                METRICS.connectivity_failures_total.labels(service=endpoint.service).inc()
                raise
            LOGGER.info("Successfully connected to %s (%s)", endpoint.service, endpoint.address)

    def _check_http(self, endpoint: ServiceEndpoint) -> None:
        url = http_url(endpoint.address)
        LOGGER.info("Checking HTTP connectivity for %s at %s", endpoint.service, url)
        request = urllib.request.Request(url=url, method="GET")  # noqa: S310
        try:
            # urlopen follows redirects; the status is that of the final response.
            timeout = self.timeout_seconds
            with urllib.request.urlopen(request, timeout=timeout) as resp:  # noqa: S310
                status = resp.status
        except urllib.error.HTTPError as exc:
            status = exc.code
        except (urllib.error.URLError, OSError, ValueError) as exc:
            reason = getattr(exc, "reason", exc)
            raise ConnectivityError(endpoint.service, endpoint.address, str(reason)) from exc

        if status != 200:
            raise ConnectivityError(
                endpoint.service, endpoint.address, f"received HTTP status {status}"
            )

    def _check_network(self, endpoint: ServiceEndpoint) -> None:
        host = sanitize_host(endpoint.address)
        if not host:
            raise ConnectivityError(endpoint.service, endpoint.address, "invalid host")
        LOGGER.info("Checking connectivity for %s at %s", endpoint.service, host)
        timeout = max(1, int(self.timeout_seconds))
        try:
            result = run_command(
                ["ping", "-c", "1", "-W", str(timeout), host],
                timeout=timeout + 5,
            )
        except CommandError as exc:
            raise ConnectivityError(endpoint.service, endpoint.address, str(exc)) from exc
        if result.returncode != 0:
            raise ConnectivityError(
                endpoint.service,
                endpoint.address,
                f"ping exited {result.returncode}: {command_output(result)}",
            )
