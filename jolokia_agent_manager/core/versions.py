#!/usr/bin/env python3
"""
Jolokia Agent Manager - Version Resolution
Parsing of ``name[:version]`` arguments and selection of the agent or template
version to use.
"""

import re
import string
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

import structlog
from packaging.specifiers import InvalidSpecifier, SpecifierSet
from packaging.version import InvalidVersion, Version

from .. import __version__
from .errors import ArtifactSpecError, UsageError
from .metadata import AgentDescriptor, MetadataDocument, TemplateDescriptor

logger = structlog.get_logger()


SNAPSHOT_SUFFIX = "-SNAPSHOT"
_NAME_CHARS = frozenset(string.ascii_letters + string.digits + "._-")
_VERSION_CHARS = _NAME_CHARS | {"+"}
_DIGITS = re.compile(r"\d+")


@dataclass(frozen=True)
class ArtifactSpec:
    """A parsed ``name[:version]`` argument."""
    name: str
    version: Optional[str] = None

    def __str__(self) -> str:
        return f"{self.name}:{self.version}" if self.version else self.name


def parse_artifact_spec(text: Optional[str]) -> ArtifactSpec:
    """
    Parse ``name[:version]``.

    The name starts with a letter or digit and may contain letters, digits,
    ``.``, ``_`` and ``-``. The version follows a single ``:`` and additionally
    allows ``+``.

    Args:
        text: Raw argument value

    Returns:
        The parsed specification

    Raises:
        ArtifactSpecError: if the text does not follow the grammar
    """
    if text is None or not text.strip():
        raise ArtifactSpecError(text or "", "name is empty")
    text = text.strip()

    name, separator, version = text.partition(":")
    _check_token(text, name, "name", _NAME_CHARS)
    if not separator:
        return ArtifactSpec(name=name)
    if not version:
        raise ArtifactSpecError(text, "missing version after ':'")
    _check_token(text, version, "version", _VERSION_CHARS)
    return ArtifactSpec(name=name, version=version)


def _check_token(text: str, token: str, what: str, allowed: frozenset) -> None:
    if not token:
        raise ArtifactSpecError(text, f"{what} is empty")
    if not token[0].isalnum():
        raise ArtifactSpecError(text, f"{what} must start with a letter or digit")
    for char in token:
        if char not in allowed:
            raise ArtifactSpecError(text, f"invalid character {char!r} in {what}")


def is_snapshot(version: str) -> bool:
    return version.upper().endswith(SNAPSHOT_SUFFIX)


def version_key(version: str) -> Tuple[Version, str]:
    """
    Sort key for agent versions.

    PEP 440 ordering where possible; strings that are not valid PEP 440 are
    ordered by their numeric components.
    """
    base = version[:-len(SNAPSHOT_SUFFIX)] if is_snapshot(version) else version
    try:
        parsed = Version(base)
    except InvalidVersion:
        numbers = _DIGITS.findall(base)
        parsed = Version(".".join(numbers) if numbers else "0")
    return parsed, version


# =============================================================================
# VERSION RESOLVER
# =============================================================================

class VersionResolver:
    """
    Validates requested names/versions against the metadata and picks the
    latest version compatible with the running client when none is given.
    """

    def __init__(self, client_version: str = __version__):
        self.client_version = client_version

    def resolve(self, name: str, version: Optional[str], known_names: Iterable[str],
                versions: Dict[str, Optional[str]], kind: str = "agent") -> str:
        """
        Validate ``name`` and return the version to use.

        Args:
            name: Requested agent type or template name
            version: Requested version, or None for the latest compatible one
            known_names: Valid names
            versions: Known versions mapped to their client version specifier
            kind: Used in messages ("agent" or "template")

        Returns:
            The resolved version string

        Raises:
            UsageError: for unknown names/versions or when nothing is compatible
        """
        known = sorted(known_names)
        if name not in known:
            raise UsageError(
                f"Unknown {kind} identifier '{name}'. Valid choices: {', '.join(known)}"
            )

        if version is None:
            latest = self.latest_compatible(versions)
            if latest is None:
                raise UsageError(
                    f"No compatible version of {kind} '{name}' for client version "
                    f"{self.client_version}"
                )
            logger.debug("Resolved latest version", name=name, version=latest)
            return latest

        if version not in versions:
            raise UsageError(
                f"Unknown version '{version}' for {kind} '{name}'. "
                f"Known versions: {', '.join(self.sorted_versions(versions))}"
            )

        if not self.is_compatible(versions[version]):
            logger.warning("Requested version is not declared compatible with this client",
                           name=name, version=version,
                           client_version=self.client_version,
                           required=versions[version])
        return version

    def resolve_agent(self, spec: ArtifactSpec,
                      metadata: MetadataDocument) -> Tuple[AgentDescriptor, str]:
        version = self.resolve(spec.name, spec.version, metadata.mapping.keys(),
                               metadata.versions, kind="agent")
        return metadata.mapping[spec.name], version

    def resolve_template(self, spec: ArtifactSpec,
                         metadata: MetadataDocument) -> Tuple[TemplateDescriptor, str]:
        names = metadata.templates.keys()
        template = metadata.templates.get(spec.name)
        versions = template.versions if template else {}
        version = self.resolve(spec.name, spec.version, names, versions, kind="template")
        return metadata.templates[spec.name], version

    def latest_compatible(self, versions: Dict[str, Optional[str]]) -> Optional[str]:
        """Highest non-snapshot version whose specifier admits the client version."""
        candidates = [v for v, specifier in versions.items()
                      if not is_snapshot(v) and self.is_compatible(specifier)]
        if not candidates:
            return None
        return max(candidates, key=version_key)

    def is_compatible(self, specifier: Optional[str]) -> bool:
        if not specifier:
            return True
        try:
            return SpecifierSet(specifier).contains(self.client_version, prereleases=True)
        except InvalidSpecifier:
            logger.warning("Ignoring invalid compatibility range", specifier=specifier)
            return False

    @staticmethod
    def sorted_versions(versions: Iterable[str]) -> List[str]:
        return sorted(versions, key=version_key)
