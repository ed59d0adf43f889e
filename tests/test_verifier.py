"""
Tests for checksum and PGP signature verification.
"""

import hashlib
from types import SimpleNamespace

import pytest
import requests

from jolokia_agent_manager.artifacts.verifier import (
    SignatureVerifier,
    VerificationMethod,
    VerificationPolicy,
    VerificationStatus,
)

URL = "https://repo1.example.org/maven2/org/jolokia/jolokia-war/1.2/jolokia-war-1.2.war"
DATA = b"agent archive bytes"


@pytest.fixture
def verifier_factory():
    def _create(*methods, required=False):
        policy = VerificationPolicy(methods=[VerificationMethod(m) for m in methods],
                                    required=required)
        return SignatureVerifier(requests.Session(), policy)
    return _create


class TestDigests:

    def test_plain_digest(self, verifier_factory, requests_mock):
        requests_mock.get(URL + ".sha256", text=hashlib.sha256(DATA).hexdigest())

        result = verifier_factory("sha256").verify_bytes(DATA, URL)

        assert result.verified
        assert result.method is VerificationMethod.SHA256

    def test_digest_with_file_name(self, verifier_factory, requests_mock):
        digest = hashlib.sha512(DATA).hexdigest().upper()
        requests_mock.get(URL + ".sha512", text=f"{digest}  jolokia-war-1.2.war\n")

        assert verifier_factory("sha512").verify_bytes(DATA, URL).verified

    def test_bsd_style_digest(self, verifier_factory, requests_mock):
        digest = hashlib.sha1(DATA).hexdigest()
        requests_mock.get(URL + ".sha1", text=f"SHA1(jolokia-war-1.2.war)= {digest}")

        assert verifier_factory("sha1").verify_bytes(DATA, URL).verified

    def test_mismatch(self, verifier_factory, requests_mock):
        requests_mock.get(URL + ".sha256", text="0" * 64)

        result = verifier_factory("sha256").verify_bytes(DATA, URL)

        assert result.status is VerificationStatus.MISMATCH
        assert "expected 000" in result.detail

    def test_first_published_method_decides(self, verifier_factory, requests_mock):
        requests_mock.get(URL + ".sha512", status_code=404)
        requests_mock.get(URL + ".sha256", text="0" * 64)
        requests_mock.get(URL + ".sha1", text=hashlib.sha1(DATA).hexdigest())

        result = verifier_factory("sha512", "sha256", "sha1").verify_bytes(DATA, URL)

        assert result.mismatch
        assert result.method_name == "sha256"
        assert not any(r.url.endswith(".sha1") for r in requests_mock.request_history)

    def test_unverified_when_nothing_published(self, verifier_factory, requests_mock):
        requests_mock.get(URL + ".sha256", status_code=404)

        result = verifier_factory("sha256").verify_bytes(DATA, URL)

        assert result.status is VerificationStatus.UNVERIFIED
        assert result.method_name == "none"

    def test_md5_only_when_listed(self, verifier_factory, requests_mock):
        requests_mock.get(URL + ".md5", text=hashlib.md5(DATA).hexdigest())

        assert not verifier_factory("sha1").verify_bytes(DATA, URL).verified
        assert verifier_factory("sha1", "md5").verify_bytes(DATA, URL).verified

    def test_verify_file(self, verifier_factory, requests_mock, tmp_path):
        path = tmp_path / "jolokia.war"
        path.write_bytes(DATA)
        requests_mock.get(URL + ".sha256", text=hashlib.sha256(DATA).hexdigest())

        assert verifier_factory("sha256").verify(path, URL).verified


KEY_ID = "ABCDEF0123456789"


def gpg_verify(status, valid=False):
    return SimpleNamespace(valid=valid, status=status, key_id=KEY_ID,
                           fingerprint="0123456789ABCDEF0123456789ABCDEF01234567",
                           trust_text="TRUST_UNDEFINED")


GOOD = gpg_verify("signature valid", valid=True)
NO_KEY = gpg_verify("no public key")
BAD = gpg_verify("signature bad")


class TestPgp:

    @pytest.fixture
    def gpg(self, mocker):
        gpg_class = mocker.patch("jolokia_agent_manager.artifacts.verifier.gnupg.GPG")
        return gpg_class.return_value

    @pytest.fixture
    def pgp_verifier(self, verifier_factory, requests_mock, gpg):
        def _create(*methods):
            requests_mock.get(URL + ".asc", text="-----BEGIN PGP SIGNATURE-----")
            return verifier_factory(*methods)
        return _create

    def test_skipped_without_gpg(self, verifier_factory, requests_mock, mocker):
        mocker.patch("jolokia_agent_manager.artifacts.verifier.gnupg.GPG",
                     side_effect=OSError("Unable to run gpg (gpg) - it may not be available."))
        requests_mock.get(URL + ".sha256", text=hashlib.sha256(DATA).hexdigest())

        result = verifier_factory("pgp", "sha256").verify_bytes(DATA, URL)

        assert result.method is VerificationMethod.SHA256
        assert not any(r.url.endswith(".asc") for r in requests_mock.request_history)

    def test_valid_signature(self, pgp_verifier, gpg):
        gpg.verify_file.return_value = GOOD

        result = pgp_verifier("pgp").verify_bytes(DATA, URL)

        assert result.verified
        assert result.method is VerificationMethod.PGP
        data_file = gpg.verify_file.call_args[0][1]
        assert data_file.endswith("artifact")

    def test_missing_key_is_received(self, pgp_verifier, gpg):
        verifier = pgp_verifier("pgp")
        verifier.policy.keyservers = ["hkps://keys.example.org"]
        gpg.verify_file.side_effect = [NO_KEY, GOOD]

        assert verifier.verify_bytes(DATA, URL).verified

        gpg.recv_keys.assert_called_once_with("hkps://keys.example.org", KEY_ID)

    def test_unavailable_key_falls_back_to_checksum(self, pgp_verifier, gpg, requests_mock):
        verifier = pgp_verifier("pgp", "sha256")
        verifier.policy.keyservers = ["hkps://keys.example.org"]
        gpg.verify_file.side_effect = [NO_KEY, NO_KEY]
        requests_mock.get(URL + ".sha256", text=hashlib.sha256(DATA).hexdigest())

        result = verifier.verify_bytes(DATA, URL)

        assert result.verified
        assert result.method is VerificationMethod.SHA256

    def test_gpg_failure_falls_back_to_checksum(self, pgp_verifier, gpg, requests_mock):
        gpg.verify_file.side_effect = OSError("gpg broken")
        requests_mock.get(URL + ".sha256", text=hashlib.sha256(DATA).hexdigest())

        result = pgp_verifier("pgp", "sha256").verify_bytes(DATA, URL)

        assert result.verified
        assert result.method is VerificationMethod.SHA256

    def test_gpg_without_result_is_not_a_mismatch(self, pgp_verifier, gpg):
        gpg.verify_file.return_value = gpg_verify(None)

        result = pgp_verifier("pgp").verify_bytes(DATA, URL)

        assert result.status is VerificationStatus.UNVERIFIED

    def test_bad_signature(self, pgp_verifier, gpg):
        gpg.verify_file.return_value = BAD

        result = pgp_verifier("pgp", "sha256").verify_bytes(DATA, URL)

        assert result.mismatch
        assert result.method is VerificationMethod.PGP
        assert result.detail == "bad signature"

    def test_gnupg_home(self, verifier_factory, requests_mock, mocker):
        gpg_class = mocker.patch("jolokia_agent_manager.artifacts.verifier.gnupg.GPG")
        gpg_class.return_value.verify_file.return_value = GOOD
        requests_mock.get(URL + ".asc", text="-----BEGIN PGP SIGNATURE-----")
        verifier = verifier_factory("pgp")
        verifier.policy.gnupg_home = "/var/lib/jolokia/gnupg"

        verifier.verify_bytes(DATA, URL)

        gpg_class.assert_called_once_with(gnupghome="/var/lib/jolokia/gnupg")


def test_policy_from_config():
    policy = VerificationPolicy.from_config({"methods": ["sha256", "md5"], "required": True,
                                             "gnupg_home": "~/gpg"})
    assert policy.methods == [VerificationMethod.SHA256, VerificationMethod.MD5]
    assert policy.required
    assert not policy.gnupg_home.startswith("~")


def test_default_policy_excludes_md5():
    assert VerificationMethod.MD5 not in VerificationPolicy().methods
    assert VerificationMethod.PGP.suffix == ".asc"
