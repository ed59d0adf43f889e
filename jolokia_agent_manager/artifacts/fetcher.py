#!/usr/bin/env python3
"""
Jolokia Agent Manager - Artifact Fetcher
Downloads agent artifacts from Maven style repositories.

This module provides:
1. Download URL construction from an agent's Maven coordinates
2. Snapshot resolution through the repository's maven-metadata.xml
3. Ordered repository fallback, moving on after any failed candidate
4. Signature verification of every download before it is accepted
"""

import os
import tempfile
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import requests
import structlog

from ..core.errors import LocalFileError, RepositoryExhausted, SignatureMismatch
from ..core.metadata import AgentDescriptor, MetadataDocument, TemplateDescriptor
from ..core.versions import SNAPSHOT_SUFFIX, is_snapshot
from .verifier import SignatureVerifier, VerificationResult, VerificationStatus

logger = structlog.get_logger()


CHUNK_SIZE = 64 * 1024


# =============================================================================
# FETCH RESULT
# =============================================================================

@dataclass
class ResolvedArtifact:
    """A downloaded artifact; lives only for the current command."""
    type: str                                   # Agent type or template name
    version: str                                # Resolved version
    download_url: str                           # URL the file was fetched from
    local_path: Path                            # Where the file was written
    verification: Optional[VerificationResult] = None


class CandidateFailed(Exception):
    """One repository could not serve the artifact; the next one is tried."""


def candidate_repositories(metadata: MetadataDocument, version: str,
                           override: Optional[str] = None,
                           extra: Sequence[str] = (),
                           snapshot_extra: Sequence[str] = ()) -> List[str]:
    """
    Ordered repositories to try for ``version``.

    An explicit override is used on its own. Otherwise configured extra
    repositories come first, followed by the ones from the metadata; snapshot
    versions use the snapshot repository lists. Duplicates are dropped.
    """
    if override:
        return [override.rstrip("/")]
    if is_snapshot(version):
        candidates = list(snapshot_extra) + metadata.snapshot_repositories
    else:
        candidates = list(extra) + metadata.repositories

    ordered: List[str] = []
    for repository in candidates:
        repository = repository.rstrip("/")
        if repository not in ordered:
            ordered.append(repository)
    return ordered


# =============================================================================
# ARTIFACT FETCHER
# =============================================================================

class ArtifactFetcher:
    """
    Fetches agents from an ordered list of repositories.

    A candidate repository fails on any transport error, HTTP error or
    signature mismatch; the fetcher then moves on to the next one and stops
    at the first success.
    """

    def __init__(self, session: requests.Session, verifier: Optional[SignatureVerifier],
                 timeout: float = 30, verification_required: bool = False):
        """
        Args:
            session: HTTP session used for every request
            verifier: Verifier for downloads, or None to skip verification
            timeout: HTTP timeout in seconds
            verification_required: Reject downloads that cannot be verified
        """
        self.session = session
        self.verifier = verifier
        self.timeout = timeout
        self.verification_required = verification_required

    def artifact_base_url(self, repository: str, agent: AgentDescriptor, version: str) -> str:
        return f"{repository.rstrip('/')}/{agent.group_path}/{agent.artifact}/{version}"

    def download_url(self, repository: str, agent: AgentDescriptor, version: str) -> str:
        """
        Build the download URL of ``agent`` at ``version`` in ``repository``.

        Snapshot versions are first resolved to their timestamped build via
        the repository's maven-metadata.xml.
        """
        base = self.artifact_base_url(repository, agent, version)
        file_version = self.resolve_snapshot(base, version) if is_snapshot(version) else version
        return f"{base}/{agent.file_name_for(file_version)}"

    def resolve_snapshot(self, base_url: str, version: str) -> str:
        """
        Return the timestamped build identifier for a snapshot version.

        Args:
            base_url: URL of the snapshot's version directory
            version: Version ending in ``-SNAPSHOT``

        Returns:
            e.g. ``1.3.0-20140125.183012-7``

        Raises:
            CandidateFailed: if the build metadata is missing or unusable
        """
        url = f"{base_url}/maven-metadata.xml"
        logger.debug("Resolving snapshot build", url=url)
        content = self._get(url).content
        try:
            root = ET.fromstring(content)
        except ET.ParseError as e:
            raise CandidateFailed(f"unparsable snapshot metadata: {e}") from e

        timestamp = root.findtext("versioning/snapshot/timestamp")
        build_number = root.findtext("versioning/snapshot/buildNumber")
        if not timestamp or not build_number:
            raise CandidateFailed("snapshot metadata has no timestamp/buildNumber")

        base_version = version[:-len(SNAPSHOT_SUFFIX)]
        return f"{base_version}-{timestamp.strip()}-{build_number.strip()}"

    def fetch_agent(self, agent: AgentDescriptor, version: str, repositories: List[str],
                    outdir: Path, file_name: Optional[str] = None) -> ResolvedArtifact:
        """
        Download an agent, trying each repository in order.

        Args:
            agent: Agent coordinates
            version: Resolved version
            repositories: Candidate repositories, in order of preference
            outdir: Target directory
            file_name: Local file name, defaults to the agent's file name

        Returns:
            The downloaded artifact

        Raises:
            RepositoryExhausted: if no repository served a valid artifact
        """
        target = Path(outdir) / (file_name or agent.artifact_file_name)
        label = f"{agent.type}:{version}"
        failures: List[Tuple[str, str]] = []

        for repository in repositories:
            try:
                url = self.download_url(repository, agent, version)
                logger.info("Downloading agent", agent=label, url=url)
                verification = self._download(url, target)
            except (CandidateFailed, SignatureMismatch) as e:
                logger.warning("Repository failed, trying next",
                               repository=repository, agent=label, error=str(e))
                failures.append((repository, str(e)))
                continue

            logger.info("Agent downloaded", agent=label, path=str(target))
            return ResolvedArtifact(type=agent.type, version=version, download_url=url,
                                    local_path=target, verification=verification)

        raise RepositoryExhausted(label, failures)

    def verify_local(self, path: Path, agent: AgentDescriptor, version: str,
                     repositories: List[str]) -> VerificationResult:
        """
        Check a local archive against the signature published for it.

        Repositories are tried in order until one publishes a usable
        signature; the outcome of that check is returned.
        """
        if self.verifier is None:
            return VerificationResult(VerificationStatus.UNVERIFIED, detail="verification disabled")

        for repository in repositories:
            try:
                url = self.download_url(repository, agent, version)
            except CandidateFailed as e:
                logger.debug("Cannot locate signature", repository=repository, error=str(e))
                continue
            result = self.verifier.verify(path, url)
            if result.status is not VerificationStatus.UNVERIFIED:
                return result
        return VerificationResult(VerificationStatus.UNVERIFIED,
                                  detail=f"no signature found in {len(repositories)} repositories")

    def fetch_template(self, template: TemplateDescriptor, version: str,
                       outdir: Path) -> ResolvedArtifact:
        """Download a policy template from its fixed URL."""
        url = template.url_for(version)
        target = Path(outdir) / template.name
        logger.info("Downloading template", template=template.name, version=version, url=url)
        _prepare_directory(target.parent)
        try:
            self._stream_to(url, target)
        except CandidateFailed as e:
            raise RepositoryExhausted(f"{template.name}:{version}", [(url, str(e))]) from e
        return ResolvedArtifact(type=template.name, version=version,
                                download_url=url, local_path=target)

    # =========================================================================
    # PRIVATE METHODS
    # =========================================================================

    def _get(self, url: str, stream: bool = False) -> requests.Response:
        try:
            response = self.session.get(url, timeout=self.timeout, stream=stream)
        except requests.RequestException as e:
            raise CandidateFailed(f"transport error: {e}") from e
        if response.status_code != 200:
            response.close()
            raise CandidateFailed(f"HTTP {response.status_code} for {url}")
        return response

    def _download(self, url: str, target: Path) -> Optional[VerificationResult]:
        """Download to a temp file, verify it, then move it into place."""
        _prepare_directory(target.parent)
        try:
            fd, tmp_name = tempfile.mkstemp(prefix=".download-", dir=str(target.parent))
        except OSError as e:
            raise LocalFileError(f"Cannot write to {target.parent}: {e}") from e
        os.close(fd)
        tmp_path = Path(tmp_name)
        try:
            self._stream_to(url, tmp_path)
            verification = self._verify(tmp_path, url)
            try:
                os.replace(tmp_path, target)
            except OSError as e:
                raise LocalFileError(f"Cannot move download to {target}: {e}") from e
            return verification
        finally:
            if tmp_path.exists():
                tmp_path.unlink()

    def _stream_to(self, url: str, target: Path) -> None:
        response = self._get(url, stream=True)
        try:
            with open(target, "wb") as f:
                for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                    f.write(chunk)
        except requests.RequestException as e:
            raise CandidateFailed(f"transfer interrupted: {e}") from e
        except OSError as e:
            raise LocalFileError(f"Cannot write {target}: {e}") from e
        finally:
            response.close()

    def _verify(self, path: Path, url: str) -> Optional[VerificationResult]:
        if self.verifier is None:
            return None
        result = self.verifier.verify(path, url)
        if result.status is VerificationStatus.MISMATCH:
            raise SignatureMismatch(url, result.method_name, result.detail)
        if result.status is VerificationStatus.UNVERIFIED and self.verification_required:
            raise SignatureMismatch(url, "signature", "verification is required but no "
                                    "signature could be checked")
        return result


def _prepare_directory(directory: Path) -> None:
    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise LocalFileError(f"Cannot create output directory {directory}: {e}") from e
