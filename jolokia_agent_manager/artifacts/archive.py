#!/usr/bin/env python3
"""
Jolokia Agent Manager - Archive Inspection
Opens a local agent archive and reports what kind of agent it is.

Type and version are always derived from the archive contents (deployment
descriptor, OSGi/agent manifest headers, Maven properties), never from the
file name.
"""

import os
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

import structlog

from ..core.errors import ArchiveFormatError
from .web_xml import DeploymentDescriptor

logger = structlog.get_logger()


WEB_XML = "WEB-INF/web.xml"
MANIFEST = "META-INF/MANIFEST.MF"
MAVEN_PREFIX = "META-INF/maven/"
MULE_PACKAGE = "org/jolokia/mule/"
POLICY_NAME = "jolokia-access.xml"
WAR_POLICY_ENTRY = "WEB-INF/classes/" + POLICY_NAME


def policy_entry_for(agent_type: str) -> str:
    """Archive entry holding the access policy for an agent type."""
    return WAR_POLICY_ENTRY if agent_type == "war" else POLICY_NAME


def parse_manifest(data: bytes) -> Dict[str, str]:
    """
    Parse a JAR manifest into a header dictionary.

    Continuation lines (starting with a single space) are joined to the
    previous header. Only the main section is read.
    """
    headers: Dict[str, str] = {}
    last = None
    for line in data.decode("utf-8", errors="replace").splitlines():
        if not line:
            if headers:
                break
            continue
        if line.startswith(" ") and last:
            headers[last] += line[1:]
            continue
        name, sep, value = line.partition(":")
        if sep:
            last = name.strip()
            headers[last] = value.strip()
    return headers


def parse_properties(data: bytes) -> Dict[str, str]:
    """Minimal java.util.Properties reader: ``key=value`` and ``key: value`` lines."""
    properties: Dict[str, str] = {}
    for line in data.decode("latin-1").splitlines():
        line = line.strip()
        if not line or line[0] in "#!":
            continue
        for separator in ("=", ":"):
            if separator in line:
                key, _, value = line.partition(separator)
                properties[key.strip()] = value.strip()
                break
    return properties


# =============================================================================
# ARCHIVE HANDLE
# =============================================================================

class ArchiveHandle:
    """
    Exclusive ownership of an open agent archive.

    Used as a context manager; the zip file and any temporary files it
    registered are released on every exit path.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._zip: Optional[zipfile.ZipFile] = None
        self._temp_files: List[Path] = []

    def __enter__(self) -> "ArchiveHandle":
        if not self.path.is_file():
            raise ArchiveFormatError(f"No such archive: {self.path}")
        try:
            self._zip = zipfile.ZipFile(self.path, "r")
        except (zipfile.BadZipFile, OSError) as e:
            raise ArchiveFormatError(f"{self.path} is not a valid archive: {e}") from e
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def release(self) -> None:
        """Close the zip file but keep registered temporary files."""
        if self._zip is not None:
            self._zip.close()
            self._zip = None

    def close(self) -> None:
        self.release()
        for temp in self._temp_files:
            try:
                if temp.exists():
                    temp.unlink()
            except OSError as e:
                logger.warning("Cannot remove temporary file", path=str(temp), error=str(e))
        self._temp_files.clear()

    def register_temp_file(self, path: Path) -> Path:
        self._temp_files.append(Path(path))
        return Path(path)

    @property
    def zip(self) -> zipfile.ZipFile:
        if self._zip is None:
            raise ArchiveFormatError(f"Archive {self.path} is not open")
        return self._zip

    def names(self) -> List[str]:
        return self.zip.namelist()

    def has_entry(self, name: str) -> bool:
        try:
            self.zip.getinfo(name)
        except KeyError:
            return False
        return True

    def read(self, name: str) -> bytes:
        try:
            return self.zip.read(name)
        except KeyError as e:
            raise ArchiveFormatError(f"{self.path} has no entry {name}") from e
        except (zipfile.BadZipFile, OSError) as e:
            raise ArchiveFormatError(f"Cannot read {name} from {self.path}: {e}") from e

    def manifest(self) -> Dict[str, str]:
        if not self.has_entry(MANIFEST):
            return {}
        return parse_manifest(self.read(MANIFEST))

    def descriptor(self) -> DeploymentDescriptor:
        return DeploymentDescriptor.from_bytes(self.read(WEB_XML))


# =============================================================================
# ARCHIVE INSPECTION
# =============================================================================

@dataclass
class ArchiveInfo:
    """Facts derived from an archive's contents."""
    path: Path
    type: str
    version: Optional[str]
    policy: bool                                # Access policy entry present
    authentication: Optional[bool] = None       # WAR only
    roles: List[str] = field(default_factory=list)
    jsr160_proxy: Optional[bool] = None         # WAR only

    def report_lines(self) -> List[str]:
        """Human readable report, one fact per line."""
        lines = [
            f"Archive:        {self.path}",
            f"Type:           {self.type}",
            f"Version:        {self.version or 'unknown'}",
            f"Policy:         {'embedded' if self.policy else 'none'}",
        ]
        if self.authentication is not None:
            if self.authentication:
                lines.append(f"Security:       authentication enabled (roles: {', '.join(self.roles)})")
            else:
                lines.append("Security:       no authentication")
        if self.jsr160_proxy is not None:
            lines.append(f"JSR-160 proxy:  {'enabled' if self.jsr160_proxy else 'disabled'}")
        return lines


class ArchiveInspector:
    """Derives type, version, policy and security state of an agent archive."""

    def inspect(self, path: Path) -> ArchiveInfo:
        """
        Inspect the archive at ``path``.

        Raises:
            ArchiveFormatError: if the archive or its descriptor is unusable
        """
        with ArchiveHandle(path) as handle:
            return self.inspect_handle(handle)

    def inspect_handle(self, handle: ArchiveHandle) -> ArchiveInfo:
        agent_type = self.detect_type(handle)
        info = ArchiveInfo(
            path=handle.path,
            type=agent_type,
            version=self.detect_version(handle),
            policy=handle.has_entry(policy_entry_for(agent_type)),
        )
        if agent_type == "war":
            descriptor = handle.descriptor()
            info.roles = descriptor.roles()
            info.authentication = bool(info.roles)
            info.jsr160_proxy = descriptor.has_jsr160_proxy()

        logger.debug("Archive inspected", path=str(handle.path), type=info.type,
                     version=info.version, policy=info.policy)
        return info

    def detect_type(self, handle: ArchiveHandle) -> str:
        """
        Classify the agent archive.

        Returns:
            One of war, osgi-bundle, osgi, mule, jvm

        Raises:
            ArchiveFormatError: if the archive is not a recognizable agent
        """
        if handle.has_entry(WEB_XML):
            return "war"

        manifest = handle.manifest()
        symbolic_name = manifest.get("Bundle-SymbolicName", "")
        if symbolic_name:
            return "osgi-bundle" if "bundle" in symbolic_name.lower() else "osgi"

        if any(name.startswith(MULE_PACKAGE) for name in handle.names()):
            return "mule"

        if manifest.get("Premain-Class") or manifest.get("Agent-Class"):
            return "jvm"

        raise ArchiveFormatError(f"{handle.path} is not a known Jolokia agent archive")

    def detect_version(self, handle: ArchiveHandle) -> Optional[str]:
        """Version from the embedded Maven properties, else the manifest."""
        for name in sorted(handle.names()):
            if not (name.startswith(MAVEN_PREFIX) and name.endswith("/pom.properties")):
                continue
            properties = parse_properties(handle.read(name))
            if properties.get("artifactId", "").startswith("jolokia") and properties.get("version"):
                return properties["version"]

        manifest = handle.manifest()
        version = manifest.get("Implementation-Version") or manifest.get("Bundle-Version")
        if version is None:
            logger.warning("Cannot determine agent version", path=os.fspath(handle.path))
        return version
