#!/usr/bin/env python3
"""
Unit tests for configuration module.

Covers loading, validation, defaults and environment variable overrides.
"""

import os
import sys
import tempfile
import yaml
import unittest
from unittest.mock import patch
from typing import Dict, Any

# Add the project directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dl_sync.config import ConfigLoader, ConfigurationError, ConfigMissing, InvalidConfig, load_config


def valid_config() -> Dict[str, Any]:
    return {
        'directory': {
            'server_url': 'ldaps://dc01.example.com:636',
            'bind_dn': 'CN=svc-dlsync,OU=Service,DC=example,DC=com',
            'bind_password': 'password',
            'base_dn': 'DC=example,DC=com'
        },
        'group': {
            'name': 'All-Staff',
            'path': 'OU=Distribution Groups,DC=example,DC=com',
            'mail': 'all-staff@example.com',
            'attributes': {
                'authOrig': ['CN=Comms,OU=Users,DC=example,DC=com'],
                'msExchRequireAuthToSendTo': True
            }
        },
        'roster': {
            'input_path': 'input/export.csv',
            'columns': ['Email', 'FirstName', 'LastName']
        }
    }


class TestConfigLoader(unittest.TestCase):
    """Test cases for ConfigLoader class."""

    def setUp(self):
        self.temp_files = []

    def tearDown(self):
        for path in self.temp_files:
            if os.path.exists(path):
                os.unlink(path)

    def create_test_config(self, config_data) -> str:
        """Create a temporary config file with the given data."""
        with tempfile.NamedTemporaryFile(mode='w', suffix='.yaml', delete=False) as f:
            if isinstance(config_data, str):
                f.write(config_data)
            else:
                yaml.safe_dump(config_data, f)
        self.temp_files.append(f.name)
        return f.name

    def test_valid_config(self):
        """Test loading a valid configuration applies defaults."""
        config = ConfigLoader(self.create_test_config(valid_config())).load()

        self.assertEqual(config['group']['scope'], 'universal')
        self.assertEqual(config['group']['category'], 'distribution')
        self.assertEqual(config['roster']['email_column'], 'Email')
        self.assertEqual(config['roster']['output_dir'], 'output')
        self.assertEqual(config['roster']['retention_days'], 30)
        self.assertEqual(config['logging']['level'], 'INFO')
        self.assertEqual(config['error_handling']['max_retries'], 3)
        self.assertFalse(config['notifications']['enable_email'])
        self.assertFalse(config['history']['enabled'])
        self.assertEqual(config['history']['granularity'], 'run')
        self.assertTrue(config['directory']['use_ssl'])
        self.assertEqual(config['directory']['receive_timeout'], 30)

    def test_missing_file_raises_config_missing(self):
        """A missing configuration file is reported as ConfigMissing."""
        with self.assertRaises(ConfigMissing):
            ConfigLoader('/nonexistent/config.yaml').load()

    def test_config_missing_is_configuration_error(self):
        self.assertTrue(issubclass(ConfigMissing, ConfigurationError))
        self.assertTrue(issubclass(InvalidConfig, ConfigurationError))

    def test_invalid_yaml(self):
        path = self.create_test_config("directory: [unclosed\n")
        with self.assertRaises(InvalidConfig) as ctx:
            ConfigLoader(path).load()
        self.assertIn('Invalid YAML', str(ctx.exception))

    def test_empty_file(self):
        path = self.create_test_config("")
        with self.assertRaises(InvalidConfig):
            ConfigLoader(path).load()

    def test_missing_required_fields(self):
        """Every missing required field is listed in one error."""
        config_data = valid_config()
        del config_data['directory']['bind_dn']
        del config_data['group']['mail']
        del config_data['roster']['input_path']

        with self.assertRaises(InvalidConfig) as ctx:
            ConfigLoader(self.create_test_config(config_data)).load()

        message = str(ctx.exception)
        self.assertIn('bind_dn', message)
        self.assertIn('mail', message)
        self.assertIn('input_path', message)

    def test_empty_column_list(self):
        config_data = valid_config()
        config_data['roster']['columns'] = []

        with self.assertRaises(InvalidConfig) as ctx:
            ConfigLoader(self.create_test_config(config_data)).load()
        self.assertIn('roster.columns', str(ctx.exception))

    def test_email_column_must_be_retained(self):
        config_data = valid_config()
        config_data['roster']['email_column'] = 'WorkEmail'

        with self.assertRaises(InvalidConfig) as ctx:
            ConfigLoader(self.create_test_config(config_data)).load()
        self.assertIn('WorkEmail', str(ctx.exception))

    def test_unsupported_attribute(self):
        config_data = valid_config()
        config_data['group']['attributes']['extensionAttribute1'] = 'x'

        with self.assertRaises(InvalidConfig) as ctx:
            ConfigLoader(self.create_test_config(config_data)).load()
        self.assertIn('extensionAttribute1', str(ctx.exception))

    def test_invalid_scope_category_and_granularity(self):
        config_data = valid_config()
        config_data['group']['scope'] = 'forest'
        config_data['group']['category'] = 'mail'
        config_data['history'] = {'granularity': 'attribute'}

        with self.assertRaises(InvalidConfig) as ctx:
            ConfigLoader(self.create_test_config(config_data)).load()

        message = str(ctx.exception)
        self.assertIn('scope', message)
        self.assertIn('category', message)
        self.assertIn('granularity', message)

    def test_scope_is_case_insensitive(self):
        config_data = valid_config()
        config_data['group']['scope'] = 'Global'
        config_data['group']['category'] = 'Security'

        config = ConfigLoader(self.create_test_config(config_data)).load()

        self.assertEqual(config['group']['scope'], 'global')
        self.assertEqual(config['group']['category'], 'security')

    @patch.dict(os.environ, {'DIRECTORY_BIND_PASSWORD': 'env_password', 'SMTP_PASSWORD': 'env_smtp'})
    def test_env_var_overrides(self):
        """Secrets from the environment replace file values."""
        config_data = valid_config()
        config_data['directory']['bind_password'] = 'file_password'

        config = ConfigLoader(self.create_test_config(config_data)).load()

        self.assertEqual(config['directory']['bind_password'], 'env_password')
        self.assertEqual(config['notifications']['smtp_password'], 'env_smtp')

    @patch.dict(os.environ, {'DIRECTORY_BIND_PASSWORD': 'env_password'})
    def test_env_var_satisfies_required_password(self):
        config_data = valid_config()
        del config_data['directory']['bind_password']

        config = ConfigLoader(self.create_test_config(config_data)).load()

        self.assertEqual(config['directory']['bind_password'], 'env_password')

    def test_config_path_from_environment(self):
        path = self.create_test_config(valid_config())
        with patch.dict(os.environ, {'CONFIG_PATH': path}):
            loader = ConfigLoader()
        self.assertEqual(loader.config_path, path)

    def test_load_config_convenience(self):
        config = load_config(self.create_test_config(valid_config()))
        self.assertEqual(config['group']['name'], 'All-Staff')


if __name__ == '__main__':
    unittest.main()
