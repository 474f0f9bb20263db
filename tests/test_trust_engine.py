"""
Tests for certificate chain verification, name matching and caller authorization.
"""
import shutil
import tempfile
import unittest
from datetime import datetime, timedelta, timezone

from cryptography.x509.oid import ExtendedKeyUsageOID

from nodetrust.security.errors import (
    CallerNotAllowed,
    MalformedCertificate,
    NameMismatch,
    TrustStoreUnavailable,
    UntrustedCertificate,
)
from nodetrust.security.trust_engine import TrustEngine, match_any_regex, verify_chain

from certificate_helpers import CertificateFactory, pem


class TestMatchAnyRegex(unittest.TestCase):

    def test_matches(self):
        self.assertTrue(match_any_regex("rip.mcollective", [r"\.choria$", r"\.mcollective$"]))
        self.assertFalse(match_any_regex("rip.example", [r"\.choria$", r"\.mcollective$"]))
        self.assertFalse(match_any_regex("rip.mcollective", []))

    def test_search_is_unanchored(self):
        self.assertTrue(match_any_regex("bob.privileged.mcollective", [r"privileged"]))


class TestVerifyChain(unittest.TestCase):

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.factory = CertificateFactory(self.temp_dir)
        self.ca = self.factory.create_ca()

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_direct_issue(self):
        leaf, _ = self.factory.create_cert("rip.mcollective", self.ca)

        verify_chain(leaf, [], [self.ca[0]])

    def test_through_intermediate(self):
        intermediate = self.factory.create_ca("Intermediate", issuer=self.ca)
        leaf, _ = self.factory.create_cert("rip.mcollective", intermediate)

        verify_chain(leaf, [intermediate[0]], [self.ca[0]])

        with self.assertRaises(UntrustedCertificate):
            verify_chain(leaf, [], [self.ca[0]])

    def test_unknown_authority(self):
        other_ca = self.factory.create_ca("Other CA")
        leaf, _ = self.factory.create_cert("rip.mcollective", other_ca)

        with self.assertRaisesRegex(UntrustedCertificate, "unknown authority"):
            verify_chain(leaf, [], [self.ca[0]])

    def test_expired(self):
        now = datetime.now(timezone.utc)
        leaf, _ = self.factory.create_cert(
            "rip.mcollective", self.ca,
            not_before=now - timedelta(days=10), not_after=now - timedelta(days=1)
        )

        with self.assertRaisesRegex(UntrustedCertificate, "expired"):
            verify_chain(leaf, [], [self.ca[0]])

    def test_key_usage(self):
        leaf, _ = self.factory.create_cert(
            "rip.mcollective", self.ca, usages=[ExtendedKeyUsageOID.SERVER_AUTH]
        )

        with self.assertRaisesRegex(UntrustedCertificate, "incompatible key usage"):
            verify_chain(leaf, [], [self.ca[0]])

        verify_chain(leaf, [], [self.ca[0]], usage=ExtendedKeyUsageOID.SERVER_AUTH)

    def test_intermediate_key_usage_constrains_leaf(self):
        intermediate = self.factory.create_ca(
            "Intermediate", issuer=self.ca, usages=[ExtendedKeyUsageOID.SERVER_AUTH]
        )
        leaf, _ = self.factory.create_cert("rip.mcollective", intermediate)

        with self.assertRaises(UntrustedCertificate):
            verify_chain(leaf, [intermediate[0]], [self.ca[0]])

        verify_chain(leaf, [intermediate[0]], [self.ca[0]], usage=ExtendedKeyUsageOID.SERVER_AUTH)

    def test_root_as_leaf(self):
        verify_chain(self.ca[0], [], [self.ca[0]])


class TestTrustEngine(unittest.TestCase):

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.factory = CertificateFactory(self.temp_dir)
        self.ca = self.factory.create_ca()
        self.ca_path = self.factory.write_certs("ca.pem", self.ca[0])

        self.engine = TrustEngine(
            ca_path=self.ca_path,
            allow_list=[r"\.mcollective$", r"\.choria$"],
            privileged_users=[r"\.privileged.mcollective$", r"\.privileged.choria$"],
        )

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _cert_pem(self, common_name, issuer=None, **kwargs):
        cert, _ = self.factory.create_cert(common_name, issuer or self.ca, **kwargs)
        return pem(cert)

    def test_verify_by_common_name(self):
        self.engine.verify_certificate(self._cert_pem("rip.mcollective"), "rip.mcollective")

    def test_verify_by_dns_name(self):
        cert_pem = self._cert_pem("rip.mcollective", dns_names=["rip.example.net"])

        self.engine.verify_certificate(cert_pem, "rip.example.net")

    def test_verify_chain_only(self):
        self.engine.verify_certificate(self._cert_pem("rip.mcollective"), "")

    def test_verify_name_mismatch(self):
        with self.assertRaisesRegex(NameMismatch, "valid for rip.mcollective, not bob.mcollective"):
            self.engine.verify_certificate(self._cert_pem("rip.mcollective"), "bob.mcollective")

    def test_verify_email(self):
        cert_pem = self._cert_pem("rip", emails=["rip@example.net"])

        self.engine.verify_certificate(cert_pem, "email:rip@example.net")

        with self.assertRaisesRegex(NameMismatch, "email address not found in SAN"):
            self.engine.verify_certificate(cert_pem, "email:bob@example.net")

    def test_verify_with_intermediate_in_pem(self):
        intermediate = self.factory.create_ca("Intermediate", issuer=self.ca)
        leaf, _ = self.factory.create_cert("rip.mcollective", intermediate)

        self.engine.verify_certificate(pem(leaf, intermediate[0]), "rip.mcollective")

        with self.assertRaises(UntrustedCertificate):
            self.engine.verify_certificate(pem(leaf), "rip.mcollective")

    def test_verify_foreign_ca(self):
        other_ca = self.factory.create_ca("Other CA")

        with self.assertRaises(UntrustedCertificate):
            self.engine.verify_certificate(self._cert_pem("rip.mcollective", other_ca), "rip.mcollective")

    def test_verify_missing_ca(self):
        engine = TrustEngine(ca_path=f"{self.temp_dir}/missing.pem")

        with self.assertRaises(TrustStoreUnavailable):
            engine.verify_certificate(self._cert_pem("rip.mcollective"), "rip.mcollective")

    def test_verify_empty_ca(self):
        engine = TrustEngine(ca_path=self.factory.write("empty.pem", b""))

        with self.assertRaises(TrustStoreUnavailable):
            engine.verify_certificate(self._cert_pem("rip.mcollective"), "rip.mcollective")

    def test_verify_garbage(self):
        with self.assertRaises(MalformedCertificate):
            self.engine.verify_certificate(b"garbage", "rip.mcollective")

    def test_authorize_allowed_caller(self):
        privileged, name = self.engine.authorize("rip.mcollective", self._cert_pem("rip.mcollective"))

        self.assertFalse(privileged)
        self.assertEqual(name, "rip.mcollective")
        self.assertFalse(self.engine.should_allow_caller("rip.mcollective", self._cert_pem("rip.mcollective")))

    def test_authorize_caller_not_on_allow_list(self):
        with self.assertRaisesRegex(CallerNotAllowed, "not on allow list"):
            self.engine.authorize("rip.example", self._cert_pem("rip.example"))

    def test_authorize_privileged_acts_for_others(self):
        cert_pem = self._cert_pem("rip.privileged.mcollective")

        privileged, name = self.engine.authorize("bob.mcollective", cert_pem)

        self.assertTrue(privileged)
        self.assertEqual(name, "rip.privileged.mcollective")
        self.assertTrue(self.engine.should_allow_caller("bob.example", cert_pem))

    def test_authorize_privileged_dns_name(self):
        cert_pem = self._cert_pem("rip.mcollective", dns_names=["rip.privileged.choria"])

        privileged, name = self.engine.authorize("bob.mcollective", cert_pem)

        self.assertTrue(privileged)
        self.assertEqual(name, "rip.privileged.choria")

    def test_authorize_privileged_requires_trust(self):
        other_ca = self.factory.create_ca("Other CA")
        cert_pem = self._cert_pem("rip.privileged.mcollective", other_ca)

        with self.assertRaises(UntrustedCertificate):
            self.engine.authorize("bob.mcollective", cert_pem)

    def test_authorize_name_mismatch(self):
        with self.assertRaises(NameMismatch):
            self.engine.authorize("bob.mcollective", self._cert_pem("rip.mcollective"))


if __name__ == '__main__':
    unittest.main()
