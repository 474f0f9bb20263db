"""
Tests for the Puppet CA security provider.
"""
import os
import shutil
import stat
import tempfile
import unittest
from unittest.mock import MagicMock, Mock, patch

from nodetrust.models.config import PuppetSecurityConfig
from nodetrust.security.enrollment import FixedIntervalRetry
from nodetrust.security.errors import ConfigurationInvalid, EnrollmentFailed
from nodetrust.security.models import SrvServer
from nodetrust.security.puppet_security import PUPPET_CA_SRV_RECORDS, USER_AGENT, PuppetSecurity


def response(status_code=200, content=b"", text="", reason="OK"):
    mock_response = Mock()
    mock_response.status_code = status_code
    mock_response.content = content
    mock_response.text = text
    mock_response.reason = reason
    return mock_response


class TestPuppetSecurity(unittest.TestCase):
    """Test cases for PuppetSecurity."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.ssl_dir = os.path.join(self.temp_dir, "ssl")
        self.session = Mock()
        self.resolver = Mock()
        self.resolver.query_srv_records.return_value = []

        self.config = PuppetSecurityConfig(
            identity="node1.example.net",
            ssl_dir=self.ssl_dir,
            puppetca_host="ca.example.net",
            puppetca_port=8140,
        )

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _security(self, **kwargs):
        return PuppetSecurity(
            self.config,
            resolver=self.resolver,
            session=self.session,
            retry_policy=FixedIntervalRetry(0.0),
            **kwargs
        )

    def test_requires_identity(self):
        with self.assertRaises(ConfigurationInvalid):
            PuppetSecurity(PuppetSecurityConfig(ssl_dir=self.ssl_dir))

    def test_requires_ssl_dir(self):
        with self.assertRaises(ConfigurationInvalid):
            PuppetSecurity(PuppetSecurityConfig(identity="node1.example.net"))

    def test_paths(self):
        security = self._security()

        self.assertEqual(security.provider(), "puppet")
        self.assertEqual(security.identity(), "node1.example.net")
        self.assertEqual(security.key_path(), os.path.join(self.ssl_dir, "private_keys", "node1.example.net.pem"))
        self.assertEqual(security.csr_path(),
                         os.path.join(self.ssl_dir, "certificate_requests", "node1.example.net.pem"))
        self.assertEqual(security.certificate_path(), os.path.join(self.ssl_dir, "certs", "node1.example.net.pem"))
        self.assertEqual(security.ca_path(), os.path.join(self.ssl_dir, "certs", "ca.pem"))
        self.assertEqual(security.cache_dir(), os.path.join(self.ssl_dir, "choria_security", "public_certs"))

    def test_embedded_file_provider_uses_legacy_verification(self):
        security = self._security()

        self.assertTrue(security.fsec.config.backward_compat_verification)
        self.assertEqual(security.fsec.config.certificate, security.certificate_path())

    def test_validate_reports_missing_files(self):
        errors, ok = self._security().validate()

        self.assertFalse(ok)
        self.assertEqual(len(errors), 3)

    def test_prepare_directories(self):
        security = self._security()

        security.prepare_directories()

        for directory, mode in [("certs", 0o755), ("certificate_requests", 0o755), ("public_keys", 0o755),
                                ("private_keys", 0o750), ("private", 0o750)]:
            path = os.path.join(self.ssl_dir, directory)
            self.assertTrue(os.path.isdir(path))
            self.assertEqual(stat.S_IMODE(os.stat(path).st_mode) & 0o755, mode & 0o755)

    def test_puppet_ca_with_srv_disabled(self):
        self.config.disable_srv = True

        server = self._security().puppet_ca()

        self.assertEqual(server, SrvServer("ca.example.net", 8140, "https"))
        self.resolver.query_srv_records.assert_not_called()

    def test_puppet_ca_from_srv(self):
        self.resolver.query_srv_records.return_value = [
            SrvServer("srv1.example.net", 8141, ""),
            SrvServer("srv2.example.net", 8141, "https"),
        ]

        server = self._security().puppet_ca()

        self.resolver.query_srv_records.assert_called_once_with(PUPPET_CA_SRV_RECORDS)
        self.assertEqual(server.url(), "https://srv1.example.net:8141")

    def test_puppet_ca_srv_failure_falls_back(self):
        self.resolver.query_srv_records.side_effect = OSError("no dns")

        self.assertEqual(self._security().puppet_ca().url(), "https://ca.example.net:8140")

    def test_puppet_ca_without_resolver(self):
        security = PuppetSecurity(self.config, session=self.session)

        self.assertEqual(security.puppet_ca().url(), "https://ca.example.net:8140")

    def _serve(self, ca_status=200, cert_responses=None):
        cert_responses = list(cert_responses or [response(200, content=b"signed cert")])

        def get(url, **kwargs):
            if "/certificate/ca?" in url:
                return response(ca_status, content=b"ca data", text="ca error")
            if len(cert_responses) > 1:
                return cert_responses.pop(0)
            return cert_responses[0]

        self.session.get.side_effect = get
        self.session.put.return_value = response(200)

    def test_enroll(self):
        self._serve(cert_responses=[response(404, text="not found"), response(200, content=b"signed cert")])
        security = self._security()

        result = security.enroll(max_wait=10)

        self.assertFalse(result.already_enrolled)
        self.assertEqual(result.attempts, 2)

        with open(security.ca_path(), 'rb') as f:
            self.assertEqual(f.read(), b"ca data")
        with open(security.certificate_path(), 'rb') as f:
            self.assertEqual(f.read(), b"signed cert")
        self.assertEqual(stat.S_IMODE(os.stat(security.certificate_path()).st_mode), 0o644)
        self.assertTrue(os.path.exists(security.key_path()))

        ca_call = self.session.get.call_args_list[0]
        self.assertEqual(ca_call.args[0],
                         "https://ca.example.net:8140/puppet-ca/v1/certificate/ca?environment=production")
        self.assertFalse(ca_call.kwargs["verify"])

        put_call = self.session.put.call_args
        self.assertEqual(
            put_call.args[0],
            "https://ca.example.net:8140/puppet-ca/v1/certificate_request/node1.example.net?environment=production"
        )
        self.assertEqual(put_call.kwargs["headers"]["User-Agent"], USER_AGENT)
        self.assertEqual(put_call.kwargs["headers"]["Content-Type"], "text/plain")
        self.assertTrue(put_call.kwargs["data"].startswith(b"-----BEGIN CERTIFICATE REQUEST-----"))

    def test_enroll_already_enrolled(self):
        security = self._security()
        security.prepare_directories()
        for path in [security.key_path(), security.ca_path(), security.certificate_path()]:
            with open(path, 'wb') as f:
                f.write(b"data")

        result = security.enroll()

        self.assertTrue(result.already_enrolled)
        self.session.get.assert_not_called()

    def test_enroll_ca_failure(self):
        self._serve(ca_status=500)

        with self.assertRaisesRegex(EnrollmentFailed, "could not fetch CA: ca error"):
            self._security().enroll()

    def test_enroll_submit_failure(self):
        self._serve()
        self.session.put.return_value = response(400, text="bad request", reason="Bad Request")

        with self.assertRaisesRegex(EnrollmentFailed, "could not send CSR to https://ca.example.net:8140"):
            self._security().enroll()

    def test_fetch_certificate_failure(self):
        self.session.get.return_value = response(404)
        security = self._security()
        security.prepare_directories()

        with self.assertRaisesRegex(EnrollmentFailed, "could not fetch certificate: 404"):
            security.fetch_certificate()

    def test_fetch_ca_closes_own_session(self):
        security = PuppetSecurity(self.config, resolver=self.resolver)
        security.prepare_directories()
        session = MagicMock()
        session.__enter__.return_value = session
        session.get.return_value = response(200, content=b"ca data")

        with patch("nodetrust.security.puppet_security.requests.Session", return_value=session):
            security.fetch_ca()

        session.__exit__.assert_called_once()
        with open(security.ca_path(), 'rb') as f:
            self.assertEqual(f.read(), b"ca data")

    def test_fetch_certificate_closes_own_session(self):
        security = PuppetSecurity(self.config, resolver=self.resolver)
        security.prepare_directories()
        session = MagicMock()
        session.__enter__.return_value = session
        session.get.return_value = response(200, content=b"signed cert")

        with patch.object(security, "http_client", return_value=session) as http_client:
            security.fetch_certificate()

        http_client.assert_called_once_with(True)
        session.__exit__.assert_called_once()


if __name__ == '__main__':
    unittest.main()
