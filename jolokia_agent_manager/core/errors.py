#!/usr/bin/env python3
"""
Jolokia Agent Manager - Error Types
Exception hierarchy shared by all commands.

Every fatal condition is raised as a subclass of AgentManagerError so the
CLI entry point can report it as a single line and exit with the proper code.
"""

from typing import List, Optional, Tuple


class AgentManagerError(Exception):
    """Base class for all errors reported by the agent manager."""
    exit_code = 1


class UsageError(AgentManagerError):
    """Bad or missing arguments, unknown type/version, conflicting options."""
    exit_code = 2


class ArtifactSpecError(UsageError):
    """A ``name[:version]`` argument could not be parsed."""

    def __init__(self, text: str, reason: str):
        self.text = text
        self.reason = reason
        super().__init__(f"Invalid artifact specification '{text}': {reason}")


class MetadataUnavailable(AgentManagerError):
    """Neither the cached nor the remote metadata document could be loaded."""


class RepositoryExhausted(AgentManagerError):
    """Every candidate repository failed to serve the artifact."""

    def __init__(self, artifact: str, failures: List[Tuple[str, str]]):
        self.artifact = artifact
        self.failures = failures
        tried = "; ".join(f"{repo} ({reason})" for repo, reason in failures)
        super().__init__(
            f"Could not download {artifact}: exhausted all repositories [{tried}]"
        )

    @property
    def repositories(self) -> List[str]:
        return [repo for repo, _ in self.failures]


class SignatureMismatch(AgentManagerError):
    """A downloaded file does not match its signature or checksum."""

    def __init__(self, path: str, method: str, detail: Optional[str] = None):
        self.path = path
        self.method = method
        self.detail = detail
        message = f"{method} verification failed for {path}"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class ArchiveFormatError(AgentManagerError):
    """An expected archive entry or descriptor is missing or unparsable."""


class UnsupportedOperation(AgentManagerError):
    """The requested operation does not apply to this kind of archive."""


class LocalFileError(AgentManagerError):
    """A local file or directory cannot be read or written."""
