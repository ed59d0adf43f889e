#!/usr/bin/env python3
"""
Jolokia Agent Manager - Signature Verification
Checks downloaded files against PGP signatures or published checksums.

Which mechanisms are acceptable, and in which order they are tried, is a
configurable policy. The first mechanism whose signature file is available
decides the outcome; weaker digests like MD5 are only used when listed.
"""

import hashlib
import os
import tempfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import gnupg
import requests
import structlog

logger = structlog.get_logger()


class VerificationMethod(Enum):
    """Signature mechanisms, named after their file suffix."""
    PGP = "pgp"
    SHA512 = "sha512"
    SHA256 = "sha256"
    SHA1 = "sha1"
    MD5 = "md5"

    @property
    def suffix(self) -> str:
        return ".asc" if self is VerificationMethod.PGP else "." + self.value


class VerificationStatus(Enum):
    VERIFIED = "verified"       # Signature or checksum matches
    MISMATCH = "mismatch"       # Signature or checksum does not match
    UNVERIFIED = "unverified"   # No usable signature mechanism


DEFAULT_METHODS = (
    VerificationMethod.PGP,
    VerificationMethod.SHA512,
    VerificationMethod.SHA256,
    VerificationMethod.SHA1,
)
DEFAULT_KEYSERVERS = ("hkps://keys.openpgp.org", "hkps://keyserver.ubuntu.com")

# Verify.status values reported by python-gnupg
NO_PUBLIC_KEY = "no public key"
BAD_SIGNATURE = "signature bad"


@dataclass
class VerificationResult:
    """Outcome of verifying one file."""
    status: VerificationStatus
    method: Optional[VerificationMethod] = None
    detail: Optional[str] = None

    @property
    def verified(self) -> bool:
        return self.status is VerificationStatus.VERIFIED

    @property
    def mismatch(self) -> bool:
        return self.status is VerificationStatus.MISMATCH

    @property
    def method_name(self) -> str:
        return self.method.value if self.method else "none"


@dataclass
class VerificationPolicy:
    """
    Verification strength policy.

    ``methods`` are tried in order. When ``required`` is set, a download that
    cannot be verified by any listed method is rejected.
    """
    methods: List[VerificationMethod] = field(default_factory=lambda: list(DEFAULT_METHODS))
    required: bool = False
    keyservers: List[str] = field(default_factory=lambda: list(DEFAULT_KEYSERVERS))
    gnupg_home: Optional[str] = None

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "VerificationPolicy":
        methods = [VerificationMethod(m) for m in config.get("methods", [m.value for m in DEFAULT_METHODS])]
        home = config.get("gnupg_home")
        return cls(
            methods=methods,
            required=bool(config.get("required", False)),
            keyservers=list(config.get("keyservers", DEFAULT_KEYSERVERS)),
            gnupg_home=os.path.expanduser(home) if home else None,
        )


# =============================================================================
# SIGNATURE VERIFIER
# =============================================================================

class SignatureVerifier:
    """Verifies local files against signature files published next to a URL."""

    def __init__(self, session: requests.Session, policy: VerificationPolicy,
                 timeout: float = 30):
        self.session = session
        self.policy = policy
        self.timeout = timeout
        self._gpg: Optional[gnupg.GPG] = None
        self._gpg_checked = False

    def verify(self, path: Path, url: str) -> VerificationResult:
        """
        Verify ``path`` against the signature files published for ``url``.

        Args:
            path: Local file
            url: URL the file was (or would be) downloaded from

        Returns:
            The verification result
        """
        return self.verify_bytes(Path(path).read_bytes(), url, path=str(path))

    def verify_bytes(self, data: bytes, url: str, path: Optional[str] = None) -> VerificationResult:
        """Verify in-memory ``data`` against the signature files for ``url``."""
        label = path or url
        for method in self.policy.methods:
            gpg = self._gpg_instance() if method is VerificationMethod.PGP else None
            if method is VerificationMethod.PGP and gpg is None:
                logger.debug("Skipping PGP verification, gpg is not available", file=label)
                continue

            signature = self._fetch(url + method.suffix)
            if signature is None:
                continue

            if method is VerificationMethod.PGP:
                result = self._verify_pgp(gpg, data, signature)
            else:
                result = self._verify_digest(data, method, signature)

            if result.verified:
                logger.info("Signature verified", file=label, method=method.value)
            elif result.mismatch:
                logger.warning("Signature verification failed",
                               file=label, method=method.value, detail=result.detail)
            else:
                logger.info("Signature could not be checked, trying next method",
                            file=label, method=method.value, detail=result.detail)
                continue
            return result

        logger.warning("No signature available for verification",
                       file=label, methods=[m.value for m in self.policy.methods])
        return VerificationResult(VerificationStatus.UNVERIFIED,
                                  detail="no signature found for any accepted method")

    # =========================================================================
    # PRIVATE METHODS
    # =========================================================================

    def _fetch(self, url: str) -> Optional[bytes]:
        try:
            response = self.session.get(url, timeout=self.timeout)
        except requests.RequestException as e:
            logger.debug("Cannot fetch signature", url=url, error=str(e))
            return None
        if response.status_code != 200:
            logger.debug("Signature not published", url=url, status=response.status_code)
            return None
        return response.content

    def _verify_digest(self, data: bytes, method: VerificationMethod,
                       signature: bytes) -> VerificationResult:
        # Checksum files hold 'digest', 'digest  filename' or 'ALG(file)= digest'
        text = signature.decode("ascii", errors="replace").strip()
        if "=" in text and "(" in text.split("=", 1)[0]:
            text = text.split("=", 1)[1].strip()
        expected = text.split()[0].lower() if text else ""

        actual = hashlib.new(method.value, data).hexdigest()
        if actual == expected:
            return VerificationResult(VerificationStatus.VERIFIED, method)
        return VerificationResult(VerificationStatus.MISMATCH, method,
                                  f"expected {expected or '<empty>'}, got {actual}")

    def _verify_pgp(self, gpg: gnupg.GPG, data: bytes, signature: bytes) -> VerificationResult:
        with tempfile.TemporaryDirectory(prefix="jolokia-verify-") as tmp:
            data_file = os.path.join(tmp, "artifact")
            signature_file = data_file + ".asc"
            with open(data_file, "wb") as f:
                f.write(data)
            with open(signature_file, "wb") as f:
                f.write(signature)

            verify = self._gpg_verify(gpg, signature_file, data_file)
            if verify is not None and verify.status == NO_PUBLIC_KEY:
                # Load the public key and try again
                logger.debug("Receiving public key", key_id=verify.key_id)
                for keyserver in self.policy.keyservers:
                    self._receive_key(gpg, keyserver, verify.key_id)
                verify = self._gpg_verify(gpg, signature_file, data_file)

        if verify is None or not verify.status:
            return VerificationResult(VerificationStatus.UNVERIFIED, VerificationMethod.PGP,
                                      "gpg could not check the signature")
        if verify.valid:
            logger.debug("PGP signature details", key_id=verify.key_id,
                         fingerprint=verify.fingerprint, trust=verify.trust_text)
            return VerificationResult(VerificationStatus.VERIFIED, VerificationMethod.PGP)

        status = verify.status.lower()
        if status == NO_PUBLIC_KEY:
            return VerificationResult(VerificationStatus.UNVERIFIED, VerificationMethod.PGP,
                                      f"public key {verify.key_id} not available")
        detail = "bad signature" if status == BAD_SIGNATURE else status
        return VerificationResult(VerificationStatus.MISMATCH, VerificationMethod.PGP, detail)

    @staticmethod
    def _gpg_verify(gpg: gnupg.GPG, signature_file: str,
                    data_file: str) -> Optional[gnupg.Verify]:
        try:
            with open(signature_file, "rb") as f:
                return gpg.verify_file(f, data_file)
        except (OSError, ValueError) as e:
            logger.warning("gpg failed to run", error=str(e))
            return None

    @staticmethod
    def _receive_key(gpg: gnupg.GPG, keyserver: str, key_id: str) -> None:
        try:
            result = gpg.recv_keys(keyserver, key_id)
        except (OSError, ValueError) as e:
            logger.debug("Key server not reachable", keyserver=keyserver, error=str(e))
            return
        logger.debug("Key server queried", keyserver=keyserver, key_id=key_id,
                     fingerprints=list(result.fingerprints))

    def _gpg_instance(self) -> Optional[gnupg.GPG]:
        """The GnuPG wrapper, or None when no gpg executable is installed."""
        if not self._gpg_checked:
            self._gpg_checked = True
            try:
                self._gpg = gnupg.GPG(gnupghome=self.policy.gnupg_home)
            except (OSError, RuntimeError, ValueError) as e:
                logger.debug("gpg unavailable, PGP signatures are skipped", error=str(e))
        return self._gpg
