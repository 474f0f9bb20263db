"""
Tests for the structured logging service.
"""
import json
import logging
import os
import shutil
import sys
import tempfile
import unittest

from nodetrust.models.config import SecurityConfig
from nodetrust.services.logging_service import JSONFormatter, LoggingService


class TestJSONFormatter(unittest.TestCase):
    """Test JSON formatter for structured logging."""

    def setUp(self):
        self.formatter = JSONFormatter()

    def test_format_basic_log_record(self):
        record = logging.getLogger('test').makeRecord(
            name='nodetrust.security.trust_engine',
            level=logging.WARNING,
            fn='trust_engine.py',
            lno=42,
            msg='Certificate does not pass verification as %s',
            args=('rip.mcollective',),
            exc_info=None
        )

        log_data = json.loads(self.formatter.format(record))

        self.assertEqual(log_data['level'], 'WARNING')
        self.assertEqual(log_data['logger_name'], 'nodetrust.security.trust_engine')
        self.assertEqual(log_data['message'], 'Certificate does not pass verification as rip.mcollective')
        self.assertEqual(log_data['line_number'], 42)
        self.assertIsNone(log_data['extra_data'])
        self.assertIsNone(log_data['exception_info'])

    def test_format_with_extra_data(self):
        record = logging.getLogger('test').makeRecord(
            'test', logging.INFO, 'test.py', 1, 'Enrolled', (), None
        )
        record.extra_data = {'identity': 'node1.example.net', 'attempts': 3}

        log_data = json.loads(self.formatter.format(record))

        self.assertEqual(log_data['extra_data'], {'identity': 'node1.example.net', 'attempts': 3})

    def test_format_with_exception(self):
        try:
            raise ValueError("bad certificate")
        except ValueError:
            exc_info = sys.exc_info()

        record = logging.getLogger('test').makeRecord(
            'test', logging.ERROR, 'test.py', 1, 'Failed', (), exc_info
        )

        log_data = json.loads(self.formatter.format(record))

        self.assertEqual(log_data['exception_info']['type'], 'ValueError')
        self.assertEqual(log_data['exception_info']['message'], 'bad certificate')
        self.assertTrue(log_data['exception_info']['traceback'])


class TestLoggingService(unittest.TestCase):
    """Test cases for LoggingService."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.config = SecurityConfig(
            log_level="DEBUG",
            log_file_path=os.path.join(self.temp_dir, "logs", "nodetrust.log"),
        )
        self.root_handlers = logging.getLogger().handlers[:]
        self.root_level = logging.getLogger().level

    def tearDown(self):
        root_logger = logging.getLogger()
        for handler in root_logger.handlers[:]:
            handler.close()
            root_logger.removeHandler(handler)
        for handler in self.root_handlers:
            root_logger.addHandler(handler)
        root_logger.setLevel(self.root_level)
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _read_entries(self, path):
        with open(path, 'r', encoding='utf-8') as f:
            return [json.loads(line) for line in f if line.strip()]

    def test_setup_creates_handlers(self):
        service = LoggingService(self.config, console=False)

        root_logger = logging.getLogger()
        self.assertEqual(len(root_logger.handlers), 2)
        self.assertEqual(root_logger.level, logging.DEBUG)
        self.assertTrue(os.path.exists(self.config.log_file_path))

        service.shutdown()
        self.assertEqual(root_logger.handlers, [])

    def test_console_handler(self):
        LoggingService(self.config)

        self.assertEqual(len(logging.getLogger().handlers), 3)

    def test_log_with_context(self):
        service = LoggingService(self.config, console=False)

        service.log_with_context('info', 'Cached certificate', identity='rip.mcollective')
        service.shutdown()

        entries = self._read_entries(self.config.log_file_path)
        cached = [e for e in entries if e['message'] == 'Cached certificate']
        self.assertEqual(len(cached), 1)
        self.assertEqual(cached[0]['logger_name'], 'nodetrust')
        self.assertEqual(cached[0]['extra_data'], {'identity': 'rip.mcollective'})

    def test_warnings_go_to_error_log(self):
        service = LoggingService(self.config, console=False)

        logging.getLogger('nodetrust.security').warning('Received certificate did not pass verification')
        logging.getLogger('nodetrust.security').info('Cached certificate')
        service.shutdown()

        error_log = os.path.join(self.temp_dir, "logs", "nodetrust.errors.log")
        messages = [e['message'] for e in self._read_entries(error_log)]
        self.assertEqual(messages, ['Received certificate did not pass verification'])


if __name__ == '__main__':
    unittest.main()
