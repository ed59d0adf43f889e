#!/usr/bin/env python3
"""
Jolokia Agent Manager - Metadata Store
Loading, caching and validation of the agent metadata document.

The metadata document lists every known agent type with its Maven
coordinates, the released versions together with the client versions they
are compatible with, policy templates, and the repositories to download from.
It is cached in the user's home directory and refreshed at most once a day.
"""

import json
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests
import structlog

from .errors import MetadataUnavailable

logger = structlog.get_logger()


DEFAULT_METADATA_URL = "https://www.jolokia.org/jolokia.meta"
DEFAULT_CACHE_FILE = "~/.jolokia_meta"
DEFAULT_MAX_AGE_HOURS = 24
AGENT_TYPES = ("war", "osgi", "osgi-bundle", "mule", "jvm")
VERSION_PLACEHOLDER = "{version}"


# =============================================================================
# METADATA DATA STRUCTURES
# =============================================================================

@dataclass(frozen=True)
class AgentDescriptor:
    """
    Maven coordinates of one agent type.

    ``coordinate_template`` is the remote file name with a ``{version}``
    placeholder, ``artifact_file_name`` the name the download is stored under.
    """
    type: str                       # war, osgi, osgi-bundle, mule, jvm
    group: str                      # Maven group id, e.g. org.jolokia
    artifact: str                   # Maven artifact id, e.g. jolokia-war
    coordinate_template: str        # e.g. jolokia-war-{version}.war
    artifact_file_name: str         # e.g. jolokia.war

    @property
    def group_path(self) -> str:
        return self.group.replace(".", "/")

    def file_name_for(self, version: str) -> str:
        return self.coordinate_template.replace(VERSION_PLACEHOLDER, version)


@dataclass(frozen=True)
class TemplateDescriptor:
    """A downloadable policy template and the versions it is published in."""
    name: str
    url_template: str
    versions: Dict[str, Optional[str]] = field(default_factory=dict)

    def url_for(self, version: str) -> str:
        return self.url_template.replace(VERSION_PLACEHOLDER, version)


@dataclass
class MetadataDocument:
    """Parsed metadata document."""
    mapping: Dict[str, AgentDescriptor]
    templates: Dict[str, TemplateDescriptor]
    repositories: List[str]
    snapshot_repositories: List[str]
    versions: Dict[str, Optional[str]]      # version -> client version specifier

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MetadataDocument":
        """
        Build a document from its JSON representation.

        Args:
            data: Decoded JSON metadata

        Returns:
            The parsed document

        Raises:
            MetadataUnavailable: if a required section is missing or malformed
        """
        if not isinstance(data, dict):
            raise MetadataUnavailable("Metadata document is not a JSON object")

        try:
            mapping = {}
            for agent_type, entry in data["mapping"].items():
                mapping[agent_type] = AgentDescriptor(
                    type=agent_type,
                    group=entry["group"],
                    artifact=entry["artifact"],
                    coordinate_template=entry["file"],
                    artifact_file_name=entry["name"],
                )

            templates = {}
            for name, entry in data.get("templates", {}).items():
                templates[name] = TemplateDescriptor(
                    name=name,
                    url_template=entry["url"],
                    versions=dict(entry.get("versions", {})),
                )

            repositories = [r.rstrip("/") for r in data["repositories"]]
            snapshots = [r.rstrip("/") for r in data.get("snapshots-repositories", [])]
            versions = dict(data["versions"])
        except (KeyError, TypeError, AttributeError, ValueError) as e:
            raise MetadataUnavailable(f"Malformed metadata document: {e!r}") from e

        unknown = sorted(set(mapping) - set(AGENT_TYPES))
        if unknown:
            logger.warning("Metadata lists unknown agent types", types=unknown)

        return cls(
            mapping=mapping,
            templates=templates,
            repositories=repositories,
            snapshot_repositories=snapshots,
            versions=versions,
        )


# =============================================================================
# METADATA STORE
# =============================================================================

class MetadataStore:
    """
    Fetches the metadata document and keeps a local cache of it.

    The cache is a single file; it is read first and only refreshed from the
    remote URL when it is older than ``max_age_hours`` or when a refresh is
    forced. A failed refresh falls back to a stale cache before giving up.
    """

    def __init__(self, session: requests.Session, config: Dict[str, Any],
                 use_cache: bool = True, verifier=None, timeout: float = 30):
        """
        Args:
            session: HTTP session used for the remote fetch
            config: ``metadata`` configuration section
            use_cache: False to neither read nor write the cache file
            verifier: Optional SignatureVerifier for the metadata signature
            timeout: HTTP timeout in seconds
        """
        self.session = session
        self.url = config.get("url", DEFAULT_METADATA_URL)
        self.cache_file = Path(os.path.expanduser(config.get("cache_file", DEFAULT_CACHE_FILE)))
        self.max_age_seconds = float(config.get("max_age_hours", DEFAULT_MAX_AGE_HOURS)) * 3600
        self.use_cache = use_cache
        self.verifier = verifier
        self.timeout = timeout
        self._document: Optional[MetadataDocument] = None

    def load(self, force_refresh: bool = False) -> MetadataDocument:
        """
        Return the metadata document, loading it at most once per process.

        Args:
            force_refresh: Ignore the cache age and fetch from the remote URL

        Returns:
            The metadata document

        Raises:
            MetadataUnavailable: if neither the cache nor the remote URL works
        """
        if self._document is not None and not force_refresh:
            return self._document

        cached = self._read_cache() if self.use_cache else None
        if cached is not None and not force_refresh and not self._is_stale():
            logger.debug("Using cached metadata", cache_file=str(self.cache_file))
            self._document = cached
            return cached

        try:
            raw = self._fetch_remote()
            document = MetadataDocument.from_dict(self._decode(raw, self.url))
        except MetadataUnavailable as e:
            if cached is None:
                raise
            logger.warning("Metadata refresh failed, using stale cache",
                           cache_file=str(self.cache_file), error=str(e))
            self._document = cached
            return cached

        if self.use_cache:
            self._write_cache(raw)
        self._document = document
        return document

    def is_cache_fresh(self) -> bool:
        return self.cache_file.exists() and not self._is_stale()

    # =========================================================================
    # PRIVATE METHODS
    # =========================================================================

    def _is_stale(self) -> bool:
        try:
            age = time.time() - self.cache_file.stat().st_mtime
        except OSError:
            return True
        return age > self.max_age_seconds

    def _read_cache(self) -> Optional[MetadataDocument]:
        """The cached document, or None when there is no usable cache."""
        if not self.cache_file.exists():
            return None
        try:
            data = self._decode(self.cache_file.read_bytes(), str(self.cache_file))
            return MetadataDocument.from_dict(data)
        except (OSError, MetadataUnavailable) as e:
            logger.warning("Ignoring unreadable metadata cache",
                           cache_file=str(self.cache_file), error=str(e))
            return None

    def _write_cache(self, raw: bytes) -> None:
        try:
            self.cache_file.parent.mkdir(parents=True, exist_ok=True)
            self.cache_file.write_bytes(raw)
            logger.debug("Metadata cached", cache_file=str(self.cache_file))
        except OSError as e:
            logger.warning("Cannot write metadata cache",
                           cache_file=str(self.cache_file), error=str(e))

    def _fetch_remote(self) -> bytes:
        logger.info("Fetching metadata", url=self.url)
        try:
            response = self.session.get(self.url, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise MetadataUnavailable(f"Cannot load metadata from {self.url}: {e}") from e

        raw = response.content
        if self.verifier is not None:
            self._check_signature(raw)
        return raw

    def _check_signature(self, raw: bytes) -> None:
        """Verify the metadata document; a failure is reported but not fatal."""
        result = self.verifier.verify_bytes(raw, self.url)
        if result.mismatch:
            logger.warning("Metadata signature does not match",
                           url=self.url, method=result.method_name, detail=result.detail)
        elif result.verified:
            logger.info("Metadata signature verified", url=self.url, method=result.method_name)
        else:
            logger.info("Metadata signature not checked", url=self.url, detail=result.detail)

    @staticmethod
    def _decode(raw: bytes, source: str) -> Dict[str, Any]:
        try:
            return json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise MetadataUnavailable(f"Cannot parse metadata from {source}: {e}") from e
