import sys
import os
import logging
import tempfile
import unittest
from unittest import mock
# Add src to path
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '../src')))

from correlation.models import CorrelationConfig
from utils.config import expand_env_vars, load_config, setup_logging

CONFIG_PATH = os.path.abspath(os.path.join(os.path.dirname(__file__), '../config/config.yaml'))


class TestLoadConfig(unittest.TestCase):
    def test_env_expansion(self):
        with mock.patch.dict(os.environ, {'THREAT_DB_URL': 'sqlite:///tmp/x.db'}):
            self.assertEqual(expand_env_vars('url: ${THREAT_DB_URL}'), 'url: sqlite:///tmp/x.db')
        with mock.patch.dict(os.environ, {}, clear=True):
            self.assertEqual(expand_env_vars('url: ${THREAT_DB_URL}'), 'url: ')

    def test_shipped_config(self):
        with mock.patch.dict(os.environ, {'THREAT_DB_URL': 'sqlite:///data/test.db'}):
            config = load_config(CONFIG_PATH)
        self.assertEqual(config['database']['url'], 'sqlite:///data/test.db')
        self.assertEqual(config['sigma']['rules_paths'], ['config/rules'])
        correlation = CorrelationConfig.from_dict(config['correlation'])
        self.assertEqual(correlation, CorrelationConfig())
        self.assertEqual(config['correlation']['scan_interval'], 300)

    def test_empty_and_invalid_files(self):
        with tempfile.TemporaryDirectory() as tmp:
            empty = os.path.join(tmp, 'empty.yaml')
            with open(empty, 'w') as f:
                f.write('')
            self.assertEqual(load_config(empty), {})

            listing = os.path.join(tmp, 'list.yaml')
            with open(listing, 'w') as f:
                f.write('- a\n- b\n')
            with self.assertRaises(ValueError):
                load_config(listing)


class TestSetupLogging(unittest.TestCase):
    def tearDown(self):
        root = logging.getLogger()
        for handler in list(root.handlers):
            root.removeHandler(handler)
            handler.close()

    def test_file_handler_and_level(self):
        with tempfile.TemporaryDirectory() as tmp:
            log_file = os.path.join(tmp, 'logs', 'core.log')
            setup_logging({'logging': {'level': 'debug', 'file': log_file}})

            root = logging.getLogger()
            self.assertEqual(root.level, logging.DEBUG)
            self.assertTrue(any(isinstance(h, logging.FileHandler) for h in root.handlers))
            self.assertEqual(logging.getLogger('sqlalchemy.engine').level, logging.WARNING)

            logging.getLogger('test').info('hello')
            for handler in root.handlers:
                handler.flush()
            with open(log_file) as f:
                self.assertIn('test - INFO - hello', f.read())
            self.tearDown()


if __name__ == '__main__':
    unittest.main()
