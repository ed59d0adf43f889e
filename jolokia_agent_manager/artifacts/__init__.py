#!/usr/bin/env python3
"""
Jolokia Agent Manager - Artifact Handling Module
Downloading, verifying, inspecting and repacking agent archives.
"""

from .fetcher import ArtifactFetcher, ResolvedArtifact, candidate_repositories
from .verifier import SignatureVerifier, VerificationPolicy, VerificationResult
from .archive import ArchiveInspector, ArchiveInfo
from .web_xml import DeploymentDescriptor
from .repacker import ArchiveRepacker, RepackRequest, RepackResult

__all__ = [
    # Download
    'ArtifactFetcher',
    'ResolvedArtifact',
    'candidate_repositories',

    # Verification
    'SignatureVerifier',
    'VerificationPolicy',
    'VerificationResult',

    # Archives
    'ArchiveInspector',
    'ArchiveInfo',
    'DeploymentDescriptor',
    'ArchiveRepacker',
    'RepackRequest',
    'RepackResult'
]
