#!/usr/bin/env python3
"""
Jolokia Agent Manager - Archive Repacking
Rewrites an agent archive to embed or drop the access policy and to switch
authentication or the JSR-160 proxy on or off.

All edits are staged in memory and written into a new archive next to the
original, which only replaces the original once every edit succeeded. A
failed repack therefore never leaves a partially written archive behind.
"""

import copy
import os
import tempfile
import time
import zipfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

import structlog

from ..core.errors import (
    ArchiveFormatError,
    LocalFileError,
    UnsupportedOperation,
    UsageError,
)
from ..core.options import DEFAULT_SECURITY_ROLE
from .archive import WEB_XML, ArchiveHandle, ArchiveInspector, policy_entry_for

logger = structlog.get_logger()


class RepackState(Enum):
    """Progress of a repack; any failure stops before SAVED."""
    OPENED = "opened"
    POLICY_EDITED = "policy_edited"
    SECURITY_EDITED = "security_edited"
    PROXY_EDITED = "proxy_edited"
    SAVED = "saved"


@dataclass
class RepackRequest:
    """
    What to change. ``None`` leaves an aspect alone, True adds, False removes.
    """
    policy: Optional[bool] = None
    policy_file: Optional[Path] = None
    security: Optional[bool] = None
    security_role: str = DEFAULT_SECURITY_ROLE
    jsr160_proxy: Optional[bool] = None

    def is_empty(self) -> bool:
        return self.policy is None and self.security is None and self.jsr160_proxy is None


@dataclass
class RepackResult:
    path: Path
    type: str
    changed: bool
    states: List[RepackState] = field(default_factory=list)
    messages: List[str] = field(default_factory=list)


class ArchiveRepacker:
    """Applies a RepackRequest to an archive atomically."""

    def __init__(self, inspector: Optional[ArchiveInspector] = None):
        self.inspector = inspector or ArchiveInspector()

    def repack(self, path: Path, request: RepackRequest) -> RepackResult:
        """
        Apply ``request`` to the archive at ``path``.

        Args:
            path: Archive to rewrite in place
            request: Requested edits

        Returns:
            What was done

        Raises:
            UsageError: if no edit was requested or the policy file is missing
            UnsupportedOperation: for security/proxy edits on a non-WAR agent
            ArchiveFormatError: if the archive or its descriptor is unusable
        """
        if request.is_empty():
            raise UsageError("At least one repack action must be given")
        if request.policy and (request.policy_file is None or not Path(request.policy_file).is_file()):
            raise UsageError(f"Policy file {request.policy_file} does not exist")

        path = Path(path)
        with ArchiveHandle(path) as handle:
            agent_type = self.inspector.detect_type(handle)
            if agent_type != "war" and (request.security is not None
                                        or request.jsr160_proxy is not None):
                raise UnsupportedOperation(
                    f"Security and JSR-160 proxy settings can only be changed for WAR "
                    f"agents, not for '{agent_type}'"
                )

            result = RepackResult(path=path, type=agent_type, changed=False,
                                  states=[RepackState.OPENED])
            replacements: Dict[str, Optional[bytes]] = {}

            if request.policy is not None:
                self._edit_policy(handle, agent_type, request, replacements, result)
            if request.security is not None or request.jsr160_proxy is not None:
                self._edit_descriptor(handle, request, replacements, result)

            if replacements:
                self._save(handle, replacements)
                result.changed = True
            result.states.append(RepackState.SAVED)

        for message in result.messages:
            logger.info(message, path=str(path))
        return result

    # =========================================================================
    # PRIVATE METHODS
    # =========================================================================

    def _edit_policy(self, handle: ArchiveHandle, agent_type: str, request: RepackRequest,
                     replacements: Dict[str, Optional[bytes]], result: RepackResult) -> None:
        entry = policy_entry_for(agent_type)
        if request.policy:
            try:
                data = Path(request.policy_file).read_bytes()
            except OSError as e:
                raise LocalFileError(f"Cannot read policy file {request.policy_file}: {e}") from e
            if handle.has_entry(entry) and handle.read(entry) == data:
                result.messages.append("Policy already embedded")
            else:
                replacements[entry] = data
                result.messages.append(f"Policy {request.policy_file} embedded as {entry}")
        elif handle.has_entry(entry):
            replacements[entry] = None
            result.messages.append("Policy removed")
        else:
            result.messages.append("No policy to remove")
        result.states.append(RepackState.POLICY_EDITED)

    def _edit_descriptor(self, handle: ArchiveHandle, request: RepackRequest,
                         replacements: Dict[str, Optional[bytes]], result: RepackResult) -> None:
        descriptor = handle.descriptor()
        changed = False

        if request.security is not None:
            if request.security:
                edited = descriptor.add_authentication(request.security_role)
                result.messages.append(
                    f"Authentication enabled for role '{request.security_role}'" if edited
                    else "Authentication already enabled"
                )
            else:
                edited = descriptor.remove_authentication()
                result.messages.append("Authentication removed" if edited
                                       else "No authentication to remove")
            changed = changed or edited
            result.states.append(RepackState.SECURITY_EDITED)

        if request.jsr160_proxy is not None:
            if request.jsr160_proxy:
                edited = descriptor.add_jsr160_proxy()
                result.messages.append("JSR-160 proxy enabled" if edited
                                       else "JSR-160 proxy already enabled")
            else:
                edited = descriptor.remove_jsr160_proxy()
                result.messages.append("JSR-160 proxy disabled" if edited
                                       else "JSR-160 proxy not enabled")
            changed = changed or edited
            result.states.append(RepackState.PROXY_EDITED)

        if changed:
            replacements[WEB_XML] = descriptor.to_bytes()

    def _save(self, handle: ArchiveHandle, replacements: Dict[str, Optional[bytes]]) -> None:
        """
        Write a new archive with ``replacements`` applied and swap it in.

        A replacement of None deletes the entry; entries not present in the
        original are appended. Untouched entries keep their ZipInfo and data.
        """
        target = handle.path
        try:
            fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}-", suffix=".tmp",
                                            dir=str(target.parent))
        except OSError as e:
            raise LocalFileError(f"Cannot create a temporary file next to {target}: {e}") from e
        os.close(fd)
        tmp_path = handle.register_temp_file(Path(tmp_name))

        source = handle.zip
        pending = dict(replacements)
        try:
            with zipfile.ZipFile(tmp_path, "w") as out:
                out.comment = source.comment
                for info in source.infolist():
                    if info.filename in pending:
                        data = pending.pop(info.filename)
                        if data is not None:
                            out.writestr(copy.copy(info), data)
                        continue
                    out.writestr(copy.copy(info), source.read(info.filename))
                for name, data in pending.items():
                    if data is not None:
                        out.writestr(zipfile.ZipInfo(name, date_time=_now()), data,
                                     compress_type=zipfile.ZIP_DEFLATED)
        except (zipfile.BadZipFile, OSError) as e:
            raise ArchiveFormatError(f"Cannot rewrite {target}: {e}") from e

        try:
            os.chmod(tmp_path, os.stat(target).st_mode)
        except OSError as e:
            logger.debug("Cannot copy file mode", path=str(target), error=str(e))
        handle.release()
        try:
            os.replace(tmp_path, target)
        except OSError as e:
            raise ArchiveFormatError(f"Cannot replace {target}: {e}") from e
        logger.debug("Archive rewritten", path=str(target), entries_changed=len(replacements))


def _now():
    return time.localtime(time.time())[:6]
