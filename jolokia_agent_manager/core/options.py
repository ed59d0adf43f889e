#!/usr/bin/env python3
"""
Jolokia Agent Manager - Command Options
The selected command and its options, built once from the command line and
handed to every component that needs them.
"""

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

from .errors import UsageError


DEFAULT_SECURITY_ROLE = "jolokia"
DEFAULT_POLICY_FILE = "jolokia-access.xml"


class Command(Enum):
    """The three operations the tool can perform."""
    DOWNLOAD = "download"   # Fetch an agent or template from a repository
    INFO = "info"           # Inspect a local agent archive
    REPACK = "repack"       # Rewrite a local agent archive

    @classmethod
    def names(cls):
        return [c.value for c in cls]


@dataclass
class ToolOptions:
    """
    Everything a single invocation was asked to do.

    Tri-state toggles (``policy``, ``security``, ``jsr160_proxy``) are None
    when the user did not mention them, True for "add" and False for
    "remove".
    """
    command: Command = Command.DOWNLOAD
    archive: Optional[Path] = None           # Archive for info/repack
    agent: Optional[str] = None              # name[:version]
    template: Optional[str] = None           # name[:version]
    outdir: Path = Path(".")
    repository: Optional[str] = None         # Overrides every other repository

    policy: Optional[bool] = None
    policy_file: Optional[Path] = None
    security: Optional[bool] = None
    security_role: str = DEFAULT_SECURITY_ROLE
    jsr160_proxy: Optional[bool] = None
    verify: bool = False

    no_cache: bool = False
    proxy: Optional[str] = None
    proxy_user: Optional[str] = None
    proxy_password: Optional[str] = None

    quiet: bool = False
    verbose: bool = False
    color: bool = True
    config_path: Optional[Path] = None

    def has_repack_actions(self) -> bool:
        return any(toggle is not None
                   for toggle in (self.policy, self.security, self.jsr160_proxy))

    def resolved_policy_file(self) -> Path:
        """
        Return the policy file to embed.

        Falls back to ``jolokia-access.xml`` in the current directory when no
        explicit file was given.

        Raises:
            UsageError: if the file does not exist
        """
        path = self.policy_file or Path(DEFAULT_POLICY_FILE)
        if not path.is_file():
            raise UsageError(f"Policy file {path} does not exist")
        return path

    def validate(self) -> None:
        """
        Check option combinations before any network or file I/O happens.

        Raises:
            UsageError: for conflicting or incomplete options
        """
        if self.command in (Command.INFO, Command.REPACK) and self.archive is None:
            raise UsageError(f"Command '{self.command.value}' requires an archive argument")

        if self.command is Command.DOWNLOAD:
            if self.agent and self.template:
                raise UsageError("--agent and --template cannot be used together")

        if self.command is Command.REPACK and not self.has_repack_actions():
            raise UsageError(
                "No repack action given; use --policy, --no-policy, --security, "
                "--no-security, --jsr160-proxy or --no-jsr160-proxy"
            )

        if self.quiet and self.verbose:
            raise UsageError("--quiet and --verbose cannot be used together")

        if self.proxy_user and not self.proxy:
            raise UsageError("--proxy-user requires --proxy")
