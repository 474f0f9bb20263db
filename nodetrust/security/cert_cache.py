"""
On-disk cache of remote public certificates that passed trust validation.
"""
import hashlib
import logging
import os
import threading
from pathlib import Path
from typing import List

from .errors import CertificateRejected, NotCached, SecurityError
from .trust_engine import TrustEngine


class CertificateCache:
    """Stores validated public certificates as <identity>.pem files in a directory."""

    def __init__(self, cache_dir: str, trust_engine: TrustEngine,
                 always_overwrite: bool = False):
        self.cache_dir = cache_dir
        self.trust_engine = trust_engine
        self.always_overwrite = always_overwrite
        self.logger = logging.getLogger(__name__)
        self._lock = threading.Lock()

    def path_for(self, identity: str) -> str:
        return os.path.join(self.cache_dir, f"{identity}.pem")

    def exists(self, identity: str) -> bool:
        return os.path.isfile(self.path_for(identity))

    def store(self, cert_pem: bytes, identity: str) -> None:
        """
        Validate cert_pem for identity and store it in the cache.

        A privileged certificate is stored under its own privileged name so it
        never ends up cached as the caller it acts on behalf of.

        Raises:
            CertificateRejected: If the certificate does not pass validation
        """
        with self._lock:
            try:
                privileged, identity = self.trust_engine.authorize(identity, cert_pem)
            except SecurityError as e:
                self.logger.warning(f"Received certificate '{identity}' did not pass verification: {e}")
                raise CertificateRejected(f"certificate '{identity}' did not pass validation")

            Path(self.cache_dir).mkdir(mode=0o755, parents=True, exist_ok=True)

            certfile = self.path_for(identity)

            if os.path.exists(certfile):
                if not self.always_overwrite:
                    self.logger.debug(
                        f"Already have a certificate in {certfile}, refusing to overwrite with a new one"
                    )
                    return

                # only rewrite when the content changed, a failed write would lose a good entry
                if self._file_sha256(certfile) == hashlib.sha256(cert_pem).hexdigest():
                    self.logger.debug(
                        f"Received certificate is the same as cached certificate {certfile}, not updating cache"
                    )
                    return

            with open(certfile, 'wb') as f:
                f.write(cert_pem)
            os.chmod(certfile, 0o644)

            if privileged:
                self.logger.warning(f"Cached privileged certificate {certfile} for {identity}")
            else:
                self.logger.info(f"Cached certificate {certfile} for {identity}")

    def load(self, identity: str) -> bytes:
        """
        Read a cached certificate without re-validating it.

        Raises:
            NotCached: If nothing is cached for identity
        """
        with self._lock:
            certfile = self.path_for(identity)
            if not os.path.isfile(certfile):
                raise NotCached(f"unknown public data: {identity}")

            with open(certfile, 'rb') as f:
                return f.read()

    def privileged_identities(self) -> List[str]:
        """Sorted identities of all cached certificates with a privileged name."""
        if not os.path.isdir(self.cache_dir):
            return []

        identities = []
        for entry in Path(self.cache_dir).glob("*.pem"):
            if not entry.is_file():
                continue
            identity = entry.name[:-len(".pem")]
            if self.trust_engine.is_privileged_name(identity):
                identities.append(identity)

        return sorted(identities)

    def _file_sha256(self, path: str) -> str:
        with open(path, 'rb') as f:
            return hashlib.sha256(f.read()).hexdigest()
