"""
Tests for the metadata document and its local cache.
"""

import json
import os
import time

import pytest
import requests
import structlog.testing

from jolokia_agent_manager.core.errors import MetadataUnavailable
from jolokia_agent_manager.core.metadata import MetadataDocument, MetadataStore

from conftest import METADATA_URL, REPO1


@pytest.fixture
def cache_file(tmp_path):
    return tmp_path / "jolokia_meta"


@pytest.fixture
def store_factory(cache_file):
    def _create(use_cache=True, verifier=None):
        config = {"url": METADATA_URL, "cache_file": str(cache_file), "max_age_hours": 24}
        return MetadataStore(requests.Session(), config, use_cache=use_cache, verifier=verifier)
    return _create


def make_stale(path, hours=25):
    old = time.time() - hours * 3600
    os.utime(path, (old, old))


class TestMetadataDocument:

    def test_from_dict(self, metadata):
        assert metadata.repositories[0] == REPO1
        war = metadata.mapping["war"]
        assert war.group_path == "org/jolokia"
        assert war.file_name_for("1.2") == "jolokia-war-1.2.war"
        assert war.artifact_file_name == "jolokia.war"
        assert metadata.versions["1.3.0-SNAPSHOT"] is None
        assert "jolokia-access.xml" in metadata.templates

    def test_missing_section(self, metadata_dict):
        del metadata_dict["mapping"]
        with pytest.raises(MetadataUnavailable, match="Malformed metadata"):
            MetadataDocument.from_dict(metadata_dict)

    def test_not_an_object(self):
        with pytest.raises(MetadataUnavailable):
            MetadataDocument.from_dict(["war"])


class TestMetadataStore:

    def test_fetches_and_caches(self, store_factory, cache_file, requests_mock, metadata_bytes):
        requests_mock.get(METADATA_URL, content=metadata_bytes)

        document = store_factory().load()

        assert "war" in document.mapping
        assert cache_file.read_bytes() == metadata_bytes

    def test_fresh_cache_avoids_network(self, store_factory, cache_file, requests_mock,
                                        metadata_bytes):
        cache_file.write_bytes(metadata_bytes)

        store = store_factory()
        document = store.load()

        assert store.is_cache_fresh()
        assert "war" in document.mapping
        assert not requests_mock.called

    def test_stale_cache_is_refreshed(self, store_factory, cache_file, requests_mock,
                                      metadata_dict):
        cache_file.write_text(json.dumps(metadata_dict))
        make_stale(cache_file)
        metadata_dict["versions"]["1.4.0"] = None
        requests_mock.get(METADATA_URL, json=metadata_dict)

        document = store_factory().load()

        assert "1.4.0" in document.versions
        assert requests_mock.call_count == 1
        assert "1.4.0" in json.loads(cache_file.read_text())["versions"]

    def test_stale_cache_used_when_refresh_fails(self, store_factory, cache_file,
                                                 requests_mock, metadata_bytes):
        cache_file.write_bytes(metadata_bytes)
        make_stale(cache_file)
        requests_mock.get(METADATA_URL, status_code=503)

        document = store_factory().load()

        assert "war" in document.mapping

    def test_unavailable_without_cache(self, store_factory, requests_mock):
        requests_mock.get(METADATA_URL, exc=requests.exceptions.ConnectTimeout)

        with pytest.raises(MetadataUnavailable, match="Cannot load metadata"):
            store_factory().load()

    def test_unparsable_remote_document(self, store_factory, requests_mock):
        requests_mock.get(METADATA_URL, text="<html>not json</html>")

        with pytest.raises(MetadataUnavailable, match="Cannot parse metadata"):
            store_factory().load()

    def test_no_cache_neither_reads_nor_writes(self, store_factory, cache_file,
                                               requests_mock, metadata_dict):
        cache_file.write_text(json.dumps({"broken": True}))
        requests_mock.get(METADATA_URL, json=metadata_dict)

        document = store_factory(use_cache=False).load()

        assert "war" in document.mapping
        assert json.loads(cache_file.read_text()) == {"broken": True}

    def test_loaded_once_per_process(self, store_factory, requests_mock, metadata_bytes):
        requests_mock.get(METADATA_URL, content=metadata_bytes)
        store = store_factory(use_cache=False)

        first = store.load()
        second = store.load()

        assert first is second
        assert requests_mock.call_count == 1

    def test_signature_mismatch_is_not_fatal(self, store_factory, requests_mock,
                                             metadata_bytes, mocker):
        requests_mock.get(METADATA_URL, content=metadata_bytes)
        verifier = mocker.Mock()
        verifier.verify_bytes.return_value = mocker.Mock(mismatch=True, verified=False,
                                                         method_name="pgp", detail="bad")

        document = store_factory(verifier=verifier).load()

        assert "war" in document.mapping
        verifier.verify_bytes.assert_called_once_with(metadata_bytes, METADATA_URL)

    def test_malformed_fresh_cache_falls_back_to_remote(self, store_factory, cache_file,
                                                        requests_mock, metadata_bytes):
        cache_file.write_text(json.dumps({"versions": {}}))
        requests_mock.get(METADATA_URL, content=metadata_bytes)

        document = store_factory().load()

        assert "war" in document.mapping
        assert requests_mock.call_count == 1
        assert cache_file.read_bytes() == metadata_bytes

    @pytest.mark.parametrize("body", [
        "<html>captive portal</html>",
        json.dumps({"repositories": []}),
    ])
    def test_unusable_refresh_keeps_stale_cache(self, store_factory, cache_file,
                                                requests_mock, metadata_bytes, body):
        cache_file.write_bytes(metadata_bytes)
        make_stale(cache_file, hours=72)
        requests_mock.get(METADATA_URL, text=body)

        document = store_factory().load()

        assert "war" in document.mapping
        assert cache_file.read_bytes() == metadata_bytes

    def test_signature_outcome_is_logged(self, store_factory, requests_mock,
                                         metadata_bytes, mocker):
        requests_mock.get(METADATA_URL, content=metadata_bytes)
        verifier = mocker.Mock()
        verifier.verify_bytes.return_value = mocker.Mock(mismatch=False, verified=True,
                                                         method_name="sha256")

        with structlog.testing.capture_logs() as logs:
            store_factory(use_cache=False, verifier=verifier).load()

        events = [(e["event"], e["log_level"]) for e in logs]
        assert ("Metadata signature verified", "info") in events
