from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import yaml

from pulsepro.src.errors import InvalidValuesError

CHECK_HTTP = "http"
CHECK_NETWORK = "network"


@dataclass(frozen=True)
class ServiceSection:
    """One recognized top-level section of the platform values blob.

    ``section`` and ``field`` locate the address in the YAML
    (``vault.address``, ``postgres.host``); ``method`` selects how the
    connectivity check reaches it.
    """

    service: str
    section: str
    field: str
    method: str


SERVICE_SECTIONS: tuple[ServiceSection, ...] = (
    ServiceSection(service="Vault", section="vault", field="address", method=CHECK_HTTP),
    ServiceSection(service="MidTier", section="midtier", field="host", method=CHECK_HTTP),
    ServiceSection(service="RabbitMQ", section="rabbitmq", field="host", method=CHECK_NETWORK),
    ServiceSection(
        service="TimescaleDB", section="timescaledb", field="host", method=CHECK_NETWORK
    ),
    ServiceSection(service="Postgres", section="postgres", field="host", method=CHECK_NETWORK),
)


@dataclass(frozen=True)
class ServiceEndpoint:
    service: str
    address: str
    method: str


@dataclass(frozen=True)
class PlatformValues:
    """Addresses of the dependent services named in a values ConfigMap."""

    endpoints: tuple[ServiceEndpoint, ...] = ()

    def address(self, service: str) -> str:
        for endpoint in self.endpoints:
            if endpoint.service == service:
                return endpoint.address
        return ""


def parse_values(document: str) -> PlatformValues:
    """Parse the values YAML into :class:`PlatformValues`.

    Unknown keys are ignored and missing sections yield an empty address.
    A document that is not a mapping, or a recognized section that is not a
    mapping, raises :class:`InvalidValuesError`.
    """
    try:
        loaded: Any = yaml.safe_load(document) if document.strip() else None
    except yaml.YAMLError as exc:
        raise InvalidValuesError(f"failed to parse values from ConfigMap: {exc}") from exc

    if loaded is None:
        loaded = {}
    if not isinstance(loaded, dict):
        raise InvalidValuesError(
            f"values document must be a mapping, got {type(loaded).__name__}"
        )

    endpoints = []
    for section in SERVICE_SECTIONS:
        raw_section = loaded.get(section.section)
        if raw_section is None:
            raw_section = {}
        if not isinstance(raw_section, dict):
            raise InvalidValuesError(f"values section {section.section!r} must be a mapping")
        raw_address = raw_section.get(section.field)
        address = "" if raw_address is None else str(raw_address).strip()
        endpoints.append(
            ServiceEndpoint(service=section.service, address=address, method=section.method)
        )
    return PlatformValues(endpoints=tuple(endpoints))
