"""
Tests for format preserving web.xml edits.
"""

import codecs

import pytest

from jolokia_agent_manager.artifacts.web_xml import (
    JSR160_DISPATCHER,
    DeploymentDescriptor,
)
from jolokia_agent_manager.core.errors import ArchiveFormatError

from conftest import WEB_XML


WEB_XML_WITH_DISPATCHER = WEB_XML.replace(
    "      <param-value>false</param-value>\n    </init-param>\n",
    "      <param-value>false</param-value>\n    </init-param>\n"
    "    <init-param>\n"
    "      <param-name>dispatcherClasses</param-name>\n"
    "      <param-value>com.example.CustomDispatcher</param-value>\n"
    "    </init-param>\n",
)

WEB_XML_WITH_LOGIN_CONFIG = WEB_XML.replace(
    "</web-app>",
    "  <login-config>\n    <auth-method>CLIENT-CERT</auth-method>\n  </login-config>\n</web-app>",
)

WEB_XML_WITH_TRANSPORT_GUARANTEE = WEB_XML.replace(
    "</web-app>",
    "  <security-constraint>\n"
    "    <web-resource-collection>\n"
    "      <web-resource-name>Everything</web-resource-name>\n"
    "      <url-pattern>/*</url-pattern>\n"
    "    </web-resource-collection>\n"
    "    <user-data-constraint>\n"
    "      <transport-guarantee>CONFIDENTIAL</transport-guarantee>\n"
    "    </user-data-constraint>\n"
    "  </security-constraint>\n"
    "  <security-role>\n    <role-name>auditor</role-name>\n  </security-role>\n"
    "</web-app>",
)

WEB_XML_COMMENTED_SECURITY = WEB_XML.replace(
    "</web-app>",
    "  <!--\n  <security-constraint>\n    <auth-constraint>\n"
    "      <role-name>admin</role-name>\n    </auth-constraint>\n"
    "  </security-constraint>\n  -->\n</web-app>",
)


@pytest.fixture
def descriptor():
    return DeploymentDescriptor(WEB_XML)


class TestReading:

    def test_plain_descriptor(self, descriptor):
        assert descriptor.roles() == []
        assert not descriptor.has_authentication()
        assert not descriptor.has_jsr160_proxy()

    def test_commented_elements_are_ignored(self):
        descriptor = DeploymentDescriptor(WEB_XML_COMMENTED_SECURITY)
        assert not descriptor.has_authentication()
        assert not descriptor.remove_authentication()
        assert descriptor.text == WEB_XML_COMMENTED_SECURITY

    def test_not_a_web_app(self):
        with pytest.raises(ArchiveFormatError, match="root element <beans>"):
            DeploymentDescriptor("<beans/>")

    def test_malformed(self):
        with pytest.raises(ArchiveFormatError, match="Cannot parse web.xml"):
            DeploymentDescriptor("<web-app><servlet></web-app>")

    def test_declared_encoding_is_kept(self):
        text = WEB_XML.replace("UTF-8", "ISO-8859-1").replace("JSON JMX Agent", "Agent été")
        data = text.encode("iso-8859-1")

        descriptor = DeploymentDescriptor.from_bytes(data)
        descriptor.add_authentication("ops")
        descriptor.remove_authentication()

        assert descriptor.encoding == "ISO-8859-1"
        assert descriptor.to_bytes() == data

    def test_utf16_with_byte_order_mark(self):
        data = codecs.BOM_UTF16_LE + WEB_XML.replace("UTF-8", "UTF-16").encode("utf-16-le")

        descriptor = DeploymentDescriptor.from_bytes(data)
        assert not descriptor.has_authentication()
        descriptor.add_authentication("ops")
        assert descriptor.roles() == ["ops"]
        descriptor.remove_authentication()

        assert descriptor.encoding == "utf-16-le"
        assert descriptor.to_bytes() == data


class TestAuthentication:

    def test_add(self, descriptor):
        assert descriptor.add_authentication("jolokia")

        assert descriptor.roles() == ["jolokia"]
        assert descriptor.text.count("<login-config>") == 1
        assert "<auth-method>BASIC</auth-method>" in descriptor.text
        assert "  <security-role>\n    <role-name>jolokia</role-name>\n  </security-role>\n" \
            in descriptor.text
        assert descriptor.text.endswith("</web-app>\n")

    def test_unrelated_content_is_untouched(self, descriptor):
        descriptor.add_authentication("jolokia")

        head = WEB_XML[:WEB_XML.index("</web-app>")]
        assert descriptor.text.startswith(head)
        assert "<!-- Jolokia agent servlet -->" in descriptor.text

    def test_add_then_remove_restores_original(self, descriptor):
        descriptor.add_authentication("jolokia")
        assert descriptor.remove_authentication()
        assert descriptor.text == WEB_XML

    def test_add_is_idempotent(self, descriptor):
        descriptor.add_authentication("jolokia")
        text = descriptor.text

        assert not descriptor.add_authentication("jolokia")
        assert descriptor.text == text

    def test_add_other_role_replaces_roles(self, descriptor):
        descriptor.add_authentication("jolokia")

        assert descriptor.add_authentication("ops")

        assert descriptor.roles() == ["ops"]
        assert "jolokia</role-name>" not in descriptor.text
        assert descriptor.text.count("<security-constraint>") == 1

    def test_role_is_escaped(self, descriptor):
        descriptor.add_authentication("a&b")
        assert descriptor.roles() == ["a&b"]
        assert "<role-name>a&amp;b</role-name>" in descriptor.text

    def test_existing_login_config_is_kept(self):
        descriptor = DeploymentDescriptor(WEB_XML_WITH_LOGIN_CONFIG)

        descriptor.add_authentication("jolokia")

        assert descriptor.text.count("<login-config>") == 1
        assert "CLIENT-CERT" in descriptor.text

        assert descriptor.remove_authentication()
        assert descriptor.text == WEB_XML_WITH_LOGIN_CONFIG

    def test_constraints_without_roles_are_kept(self):
        descriptor = DeploymentDescriptor(WEB_XML_WITH_TRANSPORT_GUARANTEE)
        assert not descriptor.has_authentication()
        assert not descriptor.remove_authentication()

        descriptor.add_authentication("ops")
        assert descriptor.roles() == ["ops"]
        assert descriptor.remove_authentication()

        assert descriptor.text == WEB_XML_WITH_TRANSPORT_GUARANTEE
        assert "<transport-guarantee>CONFIDENTIAL</transport-guarantee>" in descriptor.text
        assert "<role-name>auditor</role-name>" in descriptor.text

    def test_remove_without_authentication(self, descriptor):
        assert not descriptor.remove_authentication()
        assert descriptor.text == WEB_XML

    def test_crlf_line_endings(self):
        text = WEB_XML.replace("\n", "\r\n")
        descriptor = DeploymentDescriptor(text)

        descriptor.add_authentication("jolokia")
        assert "\r\n  <security-role>\r\n" in descriptor.text
        descriptor.remove_authentication()

        assert descriptor.text == text


class TestJsr160Proxy:

    def test_add_new_init_param(self, descriptor):
        assert descriptor.add_jsr160_proxy()

        assert descriptor.has_jsr160_proxy()
        assert ("    <init-param>\n"
                "      <param-name>dispatcherClasses</param-name>\n"
                f"      <param-value>{JSR160_DISPATCHER}</param-value>\n"
                "    </init-param>\n"
                "    <load-on-startup>") in descriptor.text

    def test_add_then_remove_restores_original(self, descriptor):
        descriptor.add_jsr160_proxy()
        assert descriptor.remove_jsr160_proxy()
        assert descriptor.text == WEB_XML

    def test_add_is_idempotent(self, descriptor):
        descriptor.add_jsr160_proxy()
        text = descriptor.text
        assert not descriptor.add_jsr160_proxy()
        assert descriptor.text == text

    def test_existing_dispatchers_are_kept(self):
        descriptor = DeploymentDescriptor(WEB_XML_WITH_DISPATCHER)

        descriptor.add_jsr160_proxy()
        assert (f"<param-value>com.example.CustomDispatcher,{JSR160_DISPATCHER}</param-value>"
                in descriptor.text)

        descriptor.remove_jsr160_proxy()
        assert descriptor.text == WEB_XML_WITH_DISPATCHER

    def test_remove_when_not_enabled(self, descriptor):
        assert not descriptor.remove_jsr160_proxy()
        assert descriptor.text == WEB_XML
