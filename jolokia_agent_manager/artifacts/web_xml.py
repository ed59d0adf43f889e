#!/usr/bin/env python3
"""
Jolokia Agent Manager - Deployment Descriptor Editing
Reads and edits the WEB-INF/web.xml of a Jolokia WAR agent.

Edits are applied as text splices at element boundaries so that everything
outside the touched elements stays byte-for-byte identical. ElementTree is
used to read the descriptor's state and to check that every edit leaves a
well-formed document behind.
"""

import codecs
import re
import xml.etree.ElementTree as ET
from typing import List, NamedTuple, Optional
from xml.sax.saxutils import escape

import structlog

from ..core.errors import ArchiveFormatError

logger = structlog.get_logger()


AGENT_SERVLET_CLASS = "org.jolokia.http.AgentServlet"
JSR160_DISPATCHER = "org.jolokia.jsr160.Jsr160RequestDispatcher"
DISPATCHER_PARAM = "dispatcherClasses"
REALM_NAME = "Jolokia"
RESOURCE_NAME = "Jolokia-Agent Access"

_COMMENT = re.compile(r"<!--.*?-->", re.S)
_ENCODING = re.compile(rb"""^[^>]*encoding\s*=\s*["']([A-Za-z0-9._-]+)["']""")
# UTF-16 documents announce themselves by a byte order mark or by the
# byte pattern of "<?"; the declared encoding is unreadable before decoding
_UTF16_MARKERS = (
    (codecs.BOM_UTF16_LE, "utf-16-le"),
    (codecs.BOM_UTF16_BE, "utf-16-be"),
    (b"<\x00?\x00", "utf-16-le"),
    (b"\x00<\x00?", "utf-16-be"),
)


class Element(NamedTuple):
    """Location of one element in the descriptor text."""
    start: int          # Offset of '<'
    end: int            # Offset just past the closing '>'
    inner_start: int    # Offset just past the opening tag
    inner_end: int      # Offset of the closing tag


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _sniff_encoding(data: bytes) -> Optional[str]:
    for marker, encoding in _UTF16_MARKERS:
        if data.startswith(marker):
            return encoding
    return None


def _children(parent: ET.Element, name: str) -> List[ET.Element]:
    return [child for child in parent if _local(child.tag) == name]


def _child_text(parent: ET.Element, name: str) -> str:
    for child in _children(parent, name):
        return (child.text or "").strip()
    return ""


class DeploymentDescriptor:
    """
    A web.xml document held as text.

    Reading goes through ElementTree; writing splices the raw text so that
    formatting, comments and ordering of unrelated elements are preserved.
    """

    def __init__(self, text: str, encoding: str = "utf-8"):
        self.text = text
        self.encoding = encoding
        self._root = self._parse(text)

    @classmethod
    def from_bytes(cls, data: bytes) -> "DeploymentDescriptor":
        encoding = _sniff_encoding(data)
        if encoding is None:
            match = _ENCODING.match(data[:200])
            encoding = match.group(1).decode("ascii") if match else "utf-8"
        try:
            text = data.decode(encoding)
        except (LookupError, UnicodeDecodeError) as e:
            raise ArchiveFormatError(f"Cannot decode web.xml: {e}") from e
        return cls(text, encoding)

    def to_bytes(self) -> bytes:
        return self.text.encode(self.encoding)

    # -------------------------------------------------------------------------
    # STATE
    # -------------------------------------------------------------------------

    def roles(self) -> List[str]:
        """Roles named in the auth-constraints of all security constraints."""
        roles = []
        for constraint in _children(self._root, "security-constraint"):
            for auth in _children(constraint, "auth-constraint"):
                for role in _children(auth, "role-name"):
                    name = (role.text or "").strip()
                    if name and name not in roles:
                        roles.append(name)
        return roles

    def has_authentication(self) -> bool:
        return bool(self.roles())

    def has_jsr160_proxy(self) -> bool:
        for servlet in _children(self._root, "servlet"):
            for param in _children(servlet, "init-param"):
                if _child_text(param, "param-name") != DISPATCHER_PARAM:
                    continue
                if JSR160_DISPATCHER in self._split_classes(_child_text(param, "param-value")):
                    return True
        return False

    # -------------------------------------------------------------------------
    # AUTHENTICATION
    # -------------------------------------------------------------------------

    def add_authentication(self, role: str) -> bool:
        """
        Require BASIC authentication with ``role`` for the whole agent.

        If authentication is already configured the role names are replaced.

        Returns:
            True if the document changed
        """
        if self.has_authentication():
            if self.roles() == [role]:
                return False
            return self._replace_roles(role)

        unit, newline = self._indent_unit(), self._newline()
        lines = [
            "<security-constraint>",
            f"{unit}<web-resource-collection>",
            f"{unit * 2}<web-resource-name>{RESOURCE_NAME}</web-resource-name>",
            f"{unit * 2}<url-pattern>/*</url-pattern>",
            f"{unit}</web-resource-collection>",
            f"{unit}<auth-constraint>",
            f"{unit * 2}<role-name>{escape(role)}</role-name>",
            f"{unit}</auth-constraint>",
            "</security-constraint>",
        ]
        if not self._find("login-config", self._root_element()):
            lines += [
                "<login-config>",
                f"{unit}<auth-method>BASIC</auth-method>",
                f"{unit}<realm-name>{REALM_NAME}</realm-name>",
                "</login-config>",
            ]
        lines += [
            "<security-role>",
            f"{unit}<role-name>{escape(role)}</role-name>",
            "</security-role>",
        ]
        block = "".join(f"{unit}{line}{newline}" for line in lines)

        root = self._root_element()
        self._insert_before_line(root.inner_end, block)
        logger.debug("Authentication added to web.xml", role=role)
        return True

    def remove_authentication(self) -> bool:
        """
        Drop the security constraints that require a role.

        Constraints without role names (transport guarantees, deny-all
        constraints) are kept. The login config goes with them only when it
        is the agent's own realm, a security role only when it names nothing
        but removed roles.
        """
        inner = self._root_element()
        spans: List[Element] = []
        removed_roles = set()
        for constraint in self._find("security-constraint", inner):
            roles = [self._inner_text(role)
                     for auth in self._find("auth-constraint", constraint)
                     for role in self._find("role-name", auth)]
            if roles:
                spans.append(constraint)
                removed_roles.update(roles)
        if not spans:
            return False

        for login in self._find("login-config", inner):
            realm = self._inner_text(self._first("realm-name", login))
            if realm.lower() == REALM_NAME.lower():
                spans.append(login)
        for security_role in self._find("security-role", inner):
            names = {self._inner_text(role) for role in self._find("role-name", security_role)}
            if names and names <= removed_roles:
                spans.append(security_role)

        self._remove_spans(spans)
        logger.debug("Authentication removed from web.xml", elements=len(spans),
                     roles=sorted(removed_roles))
        return True

    # -------------------------------------------------------------------------
    # JSR-160 PROXY
    # -------------------------------------------------------------------------

    def add_jsr160_proxy(self) -> bool:
        """Register the JSR-160 request dispatcher with the agent servlet."""
        if self.has_jsr160_proxy():
            return False

        servlet = self._agent_servlet()
        for param in self._find("init-param", servlet):
            if self._inner_text(self._first("param-name", param)) != DISPATCHER_PARAM:
                continue
            value = self._first("param-value", param)
            if value is None:
                continue
            classes = self._split_classes(self.text[value.inner_start:value.inner_end])
            classes.append(JSR160_DISPATCHER)
            self._replace_inner(value, ",".join(classes))
            return True

        anchors = self._find("init-param", servlet)
        anchors = anchors or self._find("servlet-class", servlet) or self._find("jsp-file", servlet)
        if not anchors:
            raise ArchiveFormatError("Agent servlet in web.xml declares no servlet-class")
        anchor = anchors[-1]

        indent = self._line_indent(anchor.start)
        unit, newline = self._indent_unit(), self._newline()
        block = newline.join([
            f"{indent}<init-param>",
            f"{indent}{unit}<param-name>{DISPATCHER_PARAM}</param-name>",
            f"{indent}{unit}<param-value>{JSR160_DISPATCHER}</param-value>",
            f"{indent}</init-param>",
        ]) + newline
        self._insert_after_line(anchor.end, block)
        logger.debug("JSR-160 proxy dispatcher added to web.xml")
        return True

    def remove_jsr160_proxy(self) -> bool:
        """Remove the JSR-160 dispatcher, keeping any other dispatcher classes."""
        changed = False
        for servlet in reversed(self._find("servlet", self._root_element())):
            for param in reversed(self._find("init-param", servlet)):
                if self._inner_text(self._first("param-name", param)) != DISPATCHER_PARAM:
                    continue
                value = self._first("param-value", param)
                if value is None:
                    continue
                classes = self._split_classes(self.text[value.inner_start:value.inner_end])
                if JSR160_DISPATCHER not in classes:
                    continue
                remaining = [c for c in classes if c != JSR160_DISPATCHER]
                if remaining:
                    self._replace_inner(value, ",".join(remaining))
                else:
                    self._remove_spans([param])
                changed = True
        return changed

    # =========================================================================
    # PRIVATE METHODS
    # =========================================================================

    def _parse(self, text: str) -> ET.Element:
        try:
            root = ET.fromstring(text.encode(self.encoding))
        except ET.ParseError as e:
            raise ArchiveFormatError(f"Cannot parse web.xml: {e}") from e
        if _local(root.tag) != "web-app":
            raise ArchiveFormatError(f"Unexpected web.xml root element <{_local(root.tag)}>")
        return root

    def _update(self, text: str) -> None:
        self._root = self._parse(text)
        self.text = text

    @staticmethod
    def _split_classes(value: str) -> List[str]:
        return [c.strip() for c in value.split(",") if c.strip()]

    def _masked(self) -> str:
        """The text with comments blanked out, keeping every offset intact."""
        return _COMMENT.sub(lambda m: " " * len(m.group(0)), self.text)

    def _find(self, name: str, within: Optional[Element] = None) -> List[Element]:
        masked = self._masked()
        lower = within.inner_start if within else 0
        upper = within.inner_end if within else len(masked)
        opening = re.compile(r"<(?:[\w.-]+:)?%s(?=[\s/>])[^>]*>" % re.escape(name))
        closing = re.compile(r"</(?:[\w.-]+:)?%s\s*>" % re.escape(name))

        found = []
        pos = lower
        while True:
            start = opening.search(masked, pos, upper)
            if start is None:
                break
            if start.group(0).endswith("/>"):
                found.append(Element(start.start(), start.end(), start.end(), start.end()))
                pos = start.end()
                continue
            end = closing.search(masked, start.end(), upper)
            if end is None:
                raise ArchiveFormatError(f"Unclosed <{name}> element in web.xml")
            found.append(Element(start.start(), end.end(), start.end(), end.start()))
            pos = end.end()
        return found

    def _first(self, name: str, within: Element) -> Optional[Element]:
        found = self._find(name, within)
        return found[0] if found else None

    def _inner_text(self, element: Optional[Element]) -> str:
        if element is None:
            return ""
        return self.text[element.inner_start:element.inner_end].strip()

    def _root_element(self) -> Element:
        roots = self._find("web-app")
        if not roots:
            raise ArchiveFormatError("web.xml has no <web-app> element")
        return roots[0]

    def _agent_servlet(self) -> Element:
        servlets = self._find("servlet", self._root_element())
        if not servlets:
            raise ArchiveFormatError("web.xml declares no servlet")
        for servlet in servlets:
            if self._inner_text(self._first("servlet-class", servlet)) == AGENT_SERVLET_CLASS:
                return servlet
        return servlets[0]

    def _newline(self) -> str:
        return "\r\n" if "\r\n" in self.text else "\n"

    def _indent_unit(self) -> str:
        """Indentation of the first child element of <web-app>."""
        root = self._root_element()
        match = re.compile(r"\n([ \t]+)<").search(self._masked(), root.inner_start, root.inner_end)
        return match.group(1) if match else "  "

    def _line_indent(self, offset: int) -> str:
        line_start = self.text.rfind("\n", 0, offset) + 1
        prefix = self.text[line_start:offset]
        return prefix if not prefix.strip() else ""

    def _insert_before_line(self, offset: int, block: str) -> None:
        """Insert ``block`` on its own lines in front of the line holding ``offset``."""
        line_start = self.text.rfind("\n", 0, offset) + 1
        if self.text[line_start:offset].strip():
            position, block = offset, self._newline() + block
        else:
            position = line_start
        self._update(self.text[:position] + block + self.text[position:])

    def _insert_after_line(self, offset: int, block: str) -> None:
        """Insert ``block`` on its own lines after the line ending at ``offset``."""
        line_end = self.text.find("\n", offset)
        if line_end == -1 or self.text[offset:line_end].strip():
            position, block = offset, self._newline() + block.rstrip("\r\n")
        else:
            position = line_end + 1
        self._update(self.text[:position] + block + self.text[position:])

    def _replace_inner(self, element: Element, value: str) -> None:
        self._update(self.text[:element.inner_start] + value + self.text[element.inner_end:])

    def _replace_roles(self, role: str) -> bool:
        inner = self._root_element()
        targets = []
        for constraint in self._find("security-constraint", inner):
            for auth in self._find("auth-constraint", constraint):
                targets.extend(self._find("role-name", auth))
        security_roles = self._find("security-role", inner)
        for security_role in security_roles:
            targets.extend(self._find("role-name", security_role))

        text = self.text
        for element in sorted(targets, key=lambda e: e.start, reverse=True):
            text = text[:element.inner_start] + escape(role) + text[element.inner_end:]
        self._update(text)

        if not security_roles:
            unit, newline = self._indent_unit(), self._newline()
            block = (f"{unit}<security-role>{newline}"
                     f"{unit * 2}<role-name>{escape(role)}</role-name>{newline}"
                     f"{unit}</security-role>{newline}")
            self._insert_before_line(self._root_element().inner_end, block)

        logger.debug("Authentication role replaced in web.xml", role=role)
        return True

    def _remove_spans(self, spans: List[Element]) -> None:
        """Cut elements out, together with their line when they stand alone on it."""
        text = self.text
        for element in sorted(spans, key=lambda e: e.start, reverse=True):
            start, end = element.start, element.end
            line_start = text.rfind("\n", 0, start) + 1
            line_end = text.find("\n", end)
            line_end = len(text) if line_end == -1 else line_end + 1
            if not text[line_start:start].strip() and not text[end:line_end].strip():
                start, end = line_start, line_end
            text = text[:start] + text[end:]
        self._update(text)
