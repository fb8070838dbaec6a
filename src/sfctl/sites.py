"""Site registry snapshot for one fleet invocation.

A Site Factory describes its sites in a JSON site map (``sites.json``) keyed
by domain::

    {"sites": {"abc.example.acsitefactory.com": {
        "name": "g123", "conf": {"gardens_site_id": 123, "gardens_db_name": "abcdb"}}}}

Domains belonging to the same site are grouped into a single
:class:`SiteDescriptor`. The factory-issued ``*.acsitefactory.com`` domain is
always first; custom domains follow in document order.
"""
from __future__ import annotations

import json
import re
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Protocol

FACTORY_DOMAIN_MARKER = ".acsitefactory.com"
PROFILE_PATTERN = re.compile(r"'install_profile'\] = '([a-zA-Z_]*)'")


class SiteRegistryError(RuntimeError):
    """Raised when the list of factory sites cannot be obtained."""


@dataclass(frozen=True, slots=True)
class SiteDescriptor:
    """Immutable description of one factory site."""

    id: str
    name: str
    domains: tuple[str, ...]
    db_name: str | None = None
    profile: str | None = None

    def __post_init__(self) -> None:
        """Reject descriptors that cannot be routed."""
        if not self.domains:
            raise ValueError(f"Site '{self.name}' has no domains.")

    @property
    def primary_domain(self) -> str:
        """Return the factory-issued domain."""
        return self.domains[0]

    @property
    def prefix(self) -> str:
        """Return the leftmost label of the primary domain."""
        return self.primary_domain.split(".", 1)[0]

    @property
    def routing_domain(self) -> str:
        """Return the first custom domain, or the factory domain when none exist."""
        return self.domains[1] if len(self.domains) > 1 else self.domains[0]


class SiteRegistry(Protocol):
    """Anything able to list the sites of a factory."""

    def list_sites(self) -> Mapping[str, SiteDescriptor]:
        """Return site descriptors keyed by site name."""
        ...


class SiteSet(Mapping[str, SiteDescriptor]):
    """Frozen, ordered view of the registry captured once per run."""

    def __init__(self, sites: Mapping[str, SiteDescriptor] | Iterable[SiteDescriptor]) -> None:
        """Copy *sites* so later registry changes are not observed."""
        if isinstance(sites, Mapping):
            items = dict(sites)
        else:
            items = {site.name: site for site in sites}
        self._sites: Mapping[str, SiteDescriptor] = MappingProxyType(items)

    @classmethod
    def snapshot(cls, registry: SiteRegistry) -> SiteSet:
        """Capture the current contents of *registry*."""
        return cls(registry.list_sites())

    def __getitem__(self, name: str) -> SiteDescriptor:
        return self._sites[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._sites)

    def __len__(self) -> int:
        return len(self._sites)

    def __repr__(self) -> str:
        return f"SiteSet({list(self._sites)!r})"


@dataclass(slots=True)
class SitesJsonRegistry:
    """Read site descriptors from the factory's ``sites.json`` document."""

    path: Path | None

    def list_sites(self) -> dict[str, SiteDescriptor]:
        """Parse the site map, grouping domains per site."""
        if self.path is None:
            raise SiteRegistryError(
                "No site map configured; set factory.sites_json or run on a factory host."
            )
        path = self.path.expanduser()
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError as exc:
            raise SiteRegistryError(f"Site map not found: {path}") from exc
        except OSError as exc:
            raise SiteRegistryError(f"Failed to read site map {path}: {exc}") from exc
        except json.JSONDecodeError as exc:
            raise SiteRegistryError(f"Site map corrupted ({path}): {exc}") from exc

        entries = payload.get("sites") if isinstance(payload, Mapping) else None
        if not isinstance(entries, Mapping):
            raise SiteRegistryError(f"Site map {path} has no 'sites' mapping.")

        identities: dict[str, tuple[str, str | None]] = {}
        domains: dict[str, list[str]] = {}
        for domain, details in entries.items():
            if not isinstance(details, Mapping):
                continue
            name = str(details.get("name") or "").strip()
            if not name:
                continue
            if name not in identities:
                conf = details.get("conf")
                conf_map = conf if isinstance(conf, Mapping) else {}
                db_name = conf_map.get("gardens_db_name")
                identities[name] = (
                    str(conf_map.get("gardens_site_id", name)),
                    str(db_name) if db_name else None,
                )
            domains.setdefault(name, []).append(str(domain))

        return {
            name: SiteDescriptor(
                id=site_id,
                name=name,
                domains=_order_domains(domains[name]),
                db_name=db_name,
            )
            for name, (site_id, db_name) in identities.items()
        }


def _order_domains(domains: Iterable[str]) -> tuple[str, ...]:
    ordered = list(domains)
    factory = [domain for domain in ordered if domain.endswith(FACTORY_DOMAIN_MARKER)]
    custom = [domain for domain in ordered if not domain.endswith(FACTORY_DOMAIN_MARKER)]
    return tuple(factory + custom)


@dataclass(frozen=True, slots=True)
class ProfileLookup:
    """Result of resolving a site's install profile."""

    profile: str | None
    readable: bool
    source: Path | None = None


@dataclass(slots=True)
class ProfileResolver:
    """Resolve install profiles lazily from per-site ``settings.php`` files."""

    docroot: Path = Path(".")
    _cache: dict[str, ProfileLookup] = field(default_factory=dict, repr=False)

    def settings_path(self, site: SiteDescriptor) -> Path:
        """Return the settings artifact that declares *site*'s profile."""
        return self.docroot / "sites" / "g" / "files" / site.name / "settings.php"

    def resolve(self, site: SiteDescriptor) -> ProfileLookup:
        """Return the install profile for *site* (cached per resolver)."""
        if site.profile is not None:
            return ProfileLookup(profile=site.profile, readable=True)
        cached = self._cache.get(site.name)
        if cached is not None:
            return cached
        path = self.settings_path(site)
        try:
            text = path.read_text(encoding="utf-8", errors="replace")
        except OSError:
            lookup = ProfileLookup(profile=None, readable=False, source=path)
        else:
            match = PROFILE_PATTERN.search(text)
            lookup = ProfileLookup(
                profile=match.group(1) if match else None,
                readable=True,
                source=path,
            )
        self._cache[site.name] = lookup
        return lookup


__all__ = [
    "ProfileLookup",
    "ProfileResolver",
    "SiteDescriptor",
    "SiteRegistry",
    "SiteRegistryError",
    "SiteSet",
    "SitesJsonRegistry",
]
