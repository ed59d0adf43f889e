"""
Shared fixtures: a small metadata document, agent archive builders and an
isolated home directory so no test touches the real ~/.jolokia_meta.
"""

import copy
import json
import re
import zipfile
from pathlib import Path

import pytest

from jolokia_agent_manager.core.metadata import MetadataDocument


METADATA_URL = "https://www.jolokia.org/jolokia.meta"
REPO1 = "https://repo1.example.org/maven2"
REPO2 = "https://repo2.example.org/maven2"
SNAPSHOT_REPO = "https://snapshots.example.org/maven2"

METADATA = {
    "repositories": [REPO1 + "/", REPO2],
    "snapshots-repositories": [SNAPSHOT_REPO],
    "mapping": {
        "war": {"group": "org.jolokia", "artifact": "jolokia-war",
                "file": "jolokia-war-{version}.war", "name": "jolokia.war"},
        "osgi": {"group": "org.jolokia", "artifact": "jolokia-osgi",
                 "file": "jolokia-osgi-{version}.jar", "name": "jolokia.jar"},
        "jvm": {"group": "org.jolokia", "artifact": "jolokia-jvm",
                "file": "jolokia-jvm-{version}-agent.jar", "name": "jolokia-jvm.jar"},
    },
    "versions": {
        "1.1.0": "<1.0",
        "1.2": ">=1.0",
        "1.2.0": ">=1.0,<2.0",
        "1.2.1": ">=1.0,<2.0",
        "1.3.0": ">=2.0",
        "1.3.0-SNAPSHOT": None,
    },
    "templates": {
        "jolokia-access.xml": {
            "url": "https://www.jolokia.org/templates/jolokia-access-{version}.xml",
            "versions": {"1.0": None, "1.1": None},
        },
    },
}

WEB_XML = """<?xml version="1.0" encoding="UTF-8"?>
<web-app xmlns="http://java.sun.com/xml/ns/javaee" version="2.5">
  <!-- Jolokia agent servlet -->
  <display-name>JSON JMX Agent</display-name>
  <servlet>
    <servlet-name>jolokia-agent</servlet-name>
    <servlet-class>org.jolokia.http.AgentServlet</servlet-class>
    <init-param>
      <param-name>debug</param-name>
      <param-value>false</param-value>
    </init-param>
    <load-on-startup>1</load-on-startup>
  </servlet>
  <servlet-mapping>
    <servlet-name>jolokia-agent</servlet-name>
    <url-pattern>/*</url-pattern>
  </servlet-mapping>
</web-app>
"""

POLICY = b"""<?xml version="1.0" encoding="utf-8"?>
<restrict>
  <remote><host>127.0.0.1</host></remote>
</restrict>
"""


@pytest.fixture(autouse=True)
def isolated_home(tmp_path_factory, monkeypatch):
    home = tmp_path_factory.mktemp("home")
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.delenv("JOLOKIA_AGENT_CONFIG", raising=False)
    return home


@pytest.fixture
def requests_mock():
    """Provide requests-mock for every session."""
    import requests_mock as rm
    with rm.Mocker() as m:
        # Unpublished signature files answer 404 unless a test mocks them
        m.get(re.compile(r".*\.(asc|sha\d+|md5)$"), status_code=404)
        yield m


@pytest.fixture
def metadata_dict():
    return copy.deepcopy(METADATA)


@pytest.fixture
def metadata_bytes(metadata_dict):
    return json.dumps(metadata_dict).encode("utf-8")


@pytest.fixture
def metadata(metadata_dict):
    return MetadataDocument.from_dict(metadata_dict)


def manifest(**headers) -> bytes:
    lines = ["Manifest-Version: 1.0"]
    lines += [f"{name.replace('_', '-')}: {value}" for name, value in headers.items()]
    return ("\r\n".join(lines) + "\r\n\r\n").encode("utf-8")


def pom_properties(artifact: str, version: str) -> bytes:
    return (f"#Generated by Maven\ngroupId=org.jolokia\n"
            f"artifactId={artifact}\nversion={version}\n").encode("latin-1")


@pytest.fixture
def make_archive(tmp_path):
    """Build a zip archive from a name -> bytes/str mapping."""
    def _make(name, entries):
        path = tmp_path / name
        with zipfile.ZipFile(path, "w", zipfile.ZIP_DEFLATED) as zf:
            for entry, data in entries.items():
                zf.writestr(entry, data.encode("utf-8") if isinstance(data, str) else data)
        return path
    return _make


@pytest.fixture
def war_archive(make_archive):
    return make_archive("jolokia.war", {
        "META-INF/MANIFEST.MF": manifest(Implementation_Version="1.2.0"),
        "META-INF/maven/org.jolokia/jolokia-war/pom.properties":
            pom_properties("jolokia-war", "1.2.1"),
        "WEB-INF/web.xml": WEB_XML,
        "WEB-INF/lib/jolokia-core-1.2.1.jar": b"core-jar-bytes",
    })


@pytest.fixture
def jvm_archive(make_archive):
    return make_archive("jolokia-jvm.jar", {
        "META-INF/MANIFEST.MF": manifest(Premain_Class="org.jolokia.jvmagent.JvmAgent",
                                         Agent_Class="org.jolokia.jvmagent.JvmAgent",
                                         Implementation_Version="1.2.1"),
        "org/jolokia/jvmagent/JvmAgent.class": b"\xca\xfe\xba\xbe",
    })


@pytest.fixture
def policy_file(tmp_path):
    path = tmp_path / "my-access.xml"
    path.write_bytes(POLICY)
    return path


def entries(path: Path) -> dict:
    with zipfile.ZipFile(path) as zf:
        return {name: zf.read(name) for name in zf.namelist()}
