"""
Tests for the validated public certificate cache.
"""
import os
import shutil
import stat
import tempfile
import unittest

from nodetrust.security.cert_cache import CertificateCache
from nodetrust.security.errors import CertificateRejected, NotCached
from nodetrust.security.trust_engine import TrustEngine

from certificate_helpers import CertificateFactory, pem


class TestCertificateCache(unittest.TestCase):
    """Test cases for CertificateCache."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.factory = CertificateFactory(self.temp_dir)
        self.ca = self.factory.create_ca()
        self.cache_dir = os.path.join(self.temp_dir, "cache")

        self.engine = TrustEngine(
            ca_path=self.factory.write_certs("ca.pem", self.ca[0]),
            allow_list=[r"\.mcollective$"],
            privileged_users=[r"\.privileged.mcollective$"],
        )
        self.cache = CertificateCache(self.cache_dir, self.engine)

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _cert_pem(self, common_name, issuer=None):
        cert, _ = self.factory.create_cert(common_name, issuer or self.ca)
        return pem(cert)

    def test_store_and_load(self):
        cert_pem = self._cert_pem("rip.mcollective")

        self.cache.store(cert_pem, "rip.mcollective")

        path = os.path.join(self.cache_dir, "rip.mcollective.pem")
        self.assertTrue(os.path.isfile(path))
        self.assertEqual(stat.S_IMODE(os.stat(path).st_mode), 0o644)
        self.assertEqual(self.cache.load("rip.mcollective"), cert_pem)
        self.assertTrue(self.cache.exists("rip.mcollective"))

    def test_store_rejects_untrusted(self):
        other_ca = self.factory.create_ca("Other CA")

        with self.assertRaisesRegex(CertificateRejected, "certificate 'rip.mcollective' did not pass validation"):
            self.cache.store(self._cert_pem("rip.mcollective", other_ca), "rip.mcollective")

        self.assertFalse(self.cache.exists("rip.mcollective"))

    def test_store_rejects_not_allowed(self):
        with self.assertRaises(CertificateRejected):
            self.cache.store(self._cert_pem("rip.example"), "rip.example")

    def test_existing_entry_kept(self):
        first = self._cert_pem("rip.mcollective")
        second = self._cert_pem("rip.mcollective")

        self.cache.store(first, "rip.mcollective")
        self.cache.store(second, "rip.mcollective")

        self.assertEqual(self.cache.load("rip.mcollective"), first)

    def test_existing_entry_overwritten(self):
        cache = CertificateCache(self.cache_dir, self.engine, always_overwrite=True)
        first = self._cert_pem("rip.mcollective")
        second = self._cert_pem("rip.mcollective")

        cache.store(first, "rip.mcollective")
        cache.store(first, "rip.mcollective")
        self.assertEqual(cache.load("rip.mcollective"), first)

        cache.store(second, "rip.mcollective")
        self.assertEqual(cache.load("rip.mcollective"), second)

    def test_privileged_certificate_stored_under_own_name(self):
        cert_pem = self._cert_pem("rip.privileged.mcollective")

        self.cache.store(cert_pem, "bob.mcollective")

        self.assertFalse(self.cache.exists("bob.mcollective"))
        self.assertEqual(self.cache.load("rip.privileged.mcollective"), cert_pem)

    def test_load_unknown(self):
        with self.assertRaisesRegex(NotCached, "unknown public data: bob.mcollective"):
            self.cache.load("bob.mcollective")

    def test_privileged_identities(self):
        self.assertEqual(self.cache.privileged_identities(), [])

        for name in ["z.privileged.mcollective", "rip.mcollective", "a.privileged.mcollective"]:
            self.cache.store(self._cert_pem(name), name)

        self.assertEqual(
            self.cache.privileged_identities(),
            ["a.privileged.mcollective", "z.privileged.mcollective"]
        )


if __name__ == '__main__':
    unittest.main()
