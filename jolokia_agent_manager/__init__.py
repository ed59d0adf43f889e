#!/usr/bin/env python3
"""
Jolokia Agent Manager
Download, inspect and repack Jolokia JMX-over-HTTP agents.

Agents (WAR, OSGi, OSGi bundle, Mule and JVM) are resolved from Maven style
repositories using the Jolokia metadata document, verified against their
published signatures and can be rewritten to embed an access policy, require
authentication or enable the JSR-160 proxy.
"""

__version__ = "1.0.0"
__author__ = "Jolokia Agent Manager Team"
__email__ = "jolokia-agent-manager@example.org"

from .core.errors import (
    AgentManagerError,
    UsageError,
    ArtifactSpecError,
    MetadataUnavailable,
    RepositoryExhausted,
    SignatureMismatch,
    ArchiveFormatError,
    LocalFileError,
    UnsupportedOperation
)

from .core.metadata import MetadataStore, MetadataDocument, AgentDescriptor
from .core.versions import VersionResolver, parse_artifact_spec

from .artifacts.fetcher import ArtifactFetcher
from .artifacts.archive import ArchiveInspector, ArchiveInfo
from .artifacts.repacker import ArchiveRepacker, RepackRequest

__all__ = [
    # Errors
    'AgentManagerError',
    'UsageError',
    'ArtifactSpecError',
    'MetadataUnavailable',
    'RepositoryExhausted',
    'SignatureMismatch',
    'ArchiveFormatError',
    'LocalFileError',
    'UnsupportedOperation',

    # Metadata and versions
    'MetadataStore',
    'MetadataDocument',
    'AgentDescriptor',
    'VersionResolver',
    'parse_artifact_spec',

    # Artifacts
    'ArtifactFetcher',
    'ArchiveInspector',
    'ArchiveInfo',
    'ArchiveRepacker',
    'RepackRequest',

    # Version info
    '__version__',
    '__author__',
    '__email__'
]
