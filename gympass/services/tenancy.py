from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping

from gympass.core.config import Settings, get_settings
from gympass.domain.models import Gym
from gympass.persistence.tenant_storage import TenantStorageHandle, TenantStorageRouter


@dataclass(frozen=True)
class TenantContext:
    """Which gym an operation runs for, passed explicitly to every service call."""

    slug: str
    # None only for the default gym when it has no registry row.
    tenant: Gym | None
    # "header", "subdomain" or "default".
    source: str
    storage: TenantStorageHandle

    @property
    def tenant_id(self) -> str | None:
        return self.tenant.id if self.tenant is not None else None


def extract_slug_from_host(host: str | None, base_domain: str) -> str | None:
    if not host:
        return None
    hostname = host.split(":", 1)[0].strip().lower().rstrip(".")
    suffix = f".{base_domain.lower()}"
    if not hostname.endswith(suffix):
        return None
    label = hostname[: -len(suffix)]
    # Only a single label directly under the base domain names a gym.
    if not label or "." in label or label == "www":
        return None
    return label


def resolve_tenant_slug(
    headers: Mapping[str, str],
    host: str | None,
    settings: Settings | None = None,
) -> tuple[str, str]:
    """Return ``(slug, source)``; the explicit header wins over the subdomain."""
    settings = settings or get_settings()
    header_value = headers.get(settings.tenant_header) or headers.get(settings.tenant_header.lower())
    if header_value and header_value.strip():
        return header_value.strip().lower(), "header"
    subdomain = extract_slug_from_host(host, settings.tenant_base_domain)
    if subdomain:
        return subdomain, "subdomain"
    return settings.default_tenant_slug, "default"


async def build_tenant_context(
    router: TenantStorageRouter,
    slug: str,
    *,
    source: str = "header",
    privileged: bool = False,
) -> TenantContext:
    tenant, storage = await router.resolve_tenant(slug, privileged=privileged)
    return TenantContext(slug=slug, tenant=tenant, source=source, storage=storage)
