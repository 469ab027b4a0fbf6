#!/usr/bin/env python3
"""
Unit tests for configuration module.

Covers YAML loading, the separate mapping file, environment variable overrides,
validation of the team mapping and schedule, and defaults.
"""

import os
import sys
import copy
import shutil
import tempfile
import unittest
from unittest.mock import patch

import yaml

# Add the project directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from grafana_team_sync.config import ConfigLoader, ConfigurationError, build_app_config, load_config
from grafana_team_sync.models import AppConfig, TeamSpec


class TestConfigLoader(unittest.TestCase):
    """Test cases for ConfigLoader class."""

    def setUp(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.mkdtemp(prefix='config_test_')
        self.valid_config = {
            'ldap': {
                'host': 'ldap.example.com',
                'bind_dn': 'cn=sync,dc=example,dc=com',
                'bind_password': 'secret',
                'base_dn': 'ou=people,dc=example,dc=com',
            },
            'grafana': {
                'url': 'https://grafana.example.com',
                'user': 'admin',
                'password': 'admin',
            },
            'mapping': [
                {
                    'org_id': 5,
                    'teams': [
                        {
                            'name': 'platform',
                            'admin_user_filter': '(memberOf=cn=leads)',
                            'member_user_filter': '(memberOf=cn=platform)',
                        },
                        {
                            'name': 'observers',
                            'member_user_filter': '(departmentNumber=42)',
                        },
                    ],
                }
            ],
        }

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write(self, data, name='config.yaml'):
        path = os.path.join(self.temp_dir, name)
        with open(path, 'w') as f:
            yaml.dump(data, f)
        return path

    def _load(self, data):
        return ConfigLoader(self._write(data)).load()

    def test_load_valid_config(self):
        """Test loading a valid configuration into typed settings."""
        config = self._load(self.valid_config)

        self.assertIsInstance(config, AppConfig)
        self.assertEqual(config.ldap.host, 'ldap.example.com')
        self.assertEqual(config.grafana.url, 'https://grafana.example.com')
        self.assertEqual(len(config.mapping), 1)
        self.assertEqual(config.mapping[0].org_id, 5)
        self.assertEqual(config.mapping[0].teams[0],
                         TeamSpec('platform', '(memberOf=cn=leads)', '(memberOf=cn=platform)'))
        self.assertEqual(config.mapping[0].teams[1].admin_filter, '')

    def test_team_order_is_preserved(self):
        config = self._load(self.valid_config)
        self.assertEqual([t.name for t in config.mapping[0].teams], ['platform', 'observers'])

    def test_defaults_applied(self):
        """Test default values for optional fields."""
        config = self._load(self.valid_config)

        self.assertEqual(config.ldap.port, 389)
        self.assertEqual(config.ldap.email_attribute, 'mail')
        self.assertEqual(config.ldap.connect_timeout, 10)
        self.assertEqual(config.ldap.receive_timeout, 10)
        self.assertEqual(config.grafana.timeout, 10)
        self.assertFalse(config.sync.enabled)
        self.assertEqual(config.sync.schedule, '*/30 * * * *')
        self.assertFalse(config.sync.filter_unknown_users)
        self.assertEqual(config.listen_address, ':8080')
        self.assertEqual(config.logging['level'], 'INFO')
        self.assertEqual(config.error_handling['max_retries'], 2)

    def test_ldaps_default_port(self):
        self.valid_config['ldap']['use_ssl'] = True
        config = self._load(self.valid_config)
        self.assertEqual(config.ldap.port, 636)
        self.assertTrue(config.ldap.use_ssl)

    def test_custom_email_attribute(self):
        self.valid_config['ldap']['attributes'] = {'email': 'userPrincipalName'}
        config = self._load(self.valid_config)
        self.assertEqual(config.ldap.email_attribute, 'userPrincipalName')

    def test_file_not_found(self):
        """Test error when config file doesn't exist."""
        loader = ConfigLoader(os.path.join(self.temp_dir, 'missing.yaml'))
        with self.assertRaises(ConfigurationError) as ctx:
            loader.load()
        self.assertIn('not found', str(ctx.exception))

    def test_invalid_yaml(self):
        """Test error for invalid YAML syntax."""
        path = os.path.join(self.temp_dir, 'bad.yaml')
        with open(path, 'w') as f:
            f.write("ldap: [unclosed\n")
        with self.assertRaises(ConfigurationError) as ctx:
            ConfigLoader(path).load()
        self.assertIn('Invalid YAML', str(ctx.exception))

    def test_team_without_filters_rejected(self):
        """A team needs at least one of admin_user_filter or member_user_filter."""
        self.valid_config['mapping'][0]['teams'].append({'name': 'empty'})
        with self.assertRaises(ConfigurationError) as ctx:
            self._load(self.valid_config)
        self.assertIn('admin_user_filter or member_user_filter', str(ctx.exception))
        self.assertIn('empty', str(ctx.exception))

    def test_blank_filters_rejected(self):
        self.valid_config['mapping'][0]['teams'].append(
            {'name': 'blank', 'admin_user_filter': '', 'member_user_filter': ''})
        with self.assertRaises(ConfigurationError):
            self._load(self.valid_config)

    def test_admin_only_team_accepted(self):
        self.valid_config['mapping'][0]['teams'] = [{'name': 'ops', 'admin_user_filter': '(cn=ops)'}]
        config = self._load(self.valid_config)
        self.assertEqual(config.mapping[0].teams[0].member_filter, '')

    def test_invalid_org_ids(self):
        for bad in (0, -1, 'five', None, True):
            with self.subTest(org_id=bad):
                data = copy.deepcopy(self.valid_config)
                data['mapping'][0]['org_id'] = bad
                with self.assertRaises(ConfigurationError) as ctx:
                    self._load(data)
                self.assertIn('positive integer', str(ctx.exception))

    def test_duplicate_org_ids(self):
        self.valid_config['mapping'].append(copy.deepcopy(self.valid_config['mapping'][0]))
        with self.assertRaises(ConfigurationError) as ctx:
            self._load(self.valid_config)
        self.assertIn('Duplicate org_id 5', str(ctx.exception))

    def test_duplicate_team_names(self):
        teams = self.valid_config['mapping'][0]['teams']
        teams.append(copy.deepcopy(teams[0]))
        with self.assertRaises(ConfigurationError) as ctx:
            self._load(self.valid_config)
        self.assertIn("Duplicate team name 'platform'", str(ctx.exception))

    def test_missing_team_name(self):
        self.valid_config['mapping'][0]['teams'][0]['name'] = ''
        with self.assertRaises(ConfigurationError) as ctx:
            self._load(self.valid_config)
        self.assertIn('Missing name', str(ctx.exception))

    def test_missing_mapping(self):
        del self.valid_config['mapping']
        with self.assertRaises(ConfigurationError) as ctx:
            self._load(self.valid_config)
        self.assertIn('At least one organization mapping', str(ctx.exception))

    def test_missing_required_fields_reported_together(self):
        """All validation errors are collected into one exception."""
        del self.valid_config['ldap']['host']
        del self.valid_config['ldap']['base_dn']
        self.valid_config['grafana'] = {}
        with self.assertRaises(ConfigurationError) as ctx:
            self._load(self.valid_config)
        message = str(ctx.exception)
        self.assertIn('Missing required LDAP field: host', message)
        self.assertIn('Missing required LDAP field: base_dn', message)
        self.assertIn('Missing required Grafana field: url', message)

    def test_invalid_grafana_url(self):
        self.valid_config['grafana']['url'] = 'grafana.example.com'
        with self.assertRaises(ConfigurationError):
            self._load(self.valid_config)

    def test_client_cert_type(self):
        self.valid_config['grafana']['client_cert_type'] = 'jks'
        with self.assertRaises(ConfigurationError) as ctx:
            self._load(self.valid_config)
        self.assertIn('client_cert_type', str(ctx.exception))

        self.valid_config['grafana'].update({'client_cert_type': 'pkcs12', 'client_cert_file': '/etc/client.p12'})
        config = self._load(self.valid_config)
        self.assertEqual(config.grafana.client_cert_type, 'PKCS12')
        self.assertEqual(config.grafana.client_cert_file, '/etc/client.p12')

    def test_invalid_port(self):
        self.valid_config['ldap']['port'] = 70000
        with self.assertRaises(ConfigurationError) as ctx:
            self._load(self.valid_config)
        self.assertIn('Invalid LDAP port', str(ctx.exception))

    def test_timeouts_must_be_positive(self):
        cases = [
            ('ldap', 'connect_timeout', None),
            ('ldap', 'connect_timeout', 0),
            ('ldap', 'connect_timeout', -1),
            ('ldap', 'receive_timeout', None),
            ('ldap', 'receive_timeout', 'ten'),
            ('grafana', 'timeout', None),
            ('grafana', 'timeout', 0),
            ('grafana', 'timeout', -5),
        ]
        for section, key, bad in cases:
            with self.subTest(key=f'{section}.{key}', value=bad):
                data = copy.deepcopy(self.valid_config)
                data[section][key] = bad
                with self.assertRaises(ConfigurationError) as ctx:
                    self._load(data)
                self.assertIn(f'{section}.{key} must be a positive number', str(ctx.exception))

    def test_custom_timeouts(self):
        self.valid_config['ldap'].update({'connect_timeout': 3, 'receive_timeout': 2.5})
        self.valid_config['grafana']['timeout'] = 30
        config = self._load(self.valid_config)
        self.assertEqual(config.ldap.connect_timeout, 3)
        self.assertEqual(config.ldap.receive_timeout, 2.5)
        self.assertEqual(config.grafana.timeout, 30)

    def test_invalid_listen_address(self):
        for bad in ('localhost', ':99999', ':0', 'localhost:http', None):
            with self.subTest(listen_address=bad):
                data = copy.deepcopy(self.valid_config)
                data['server'] = {'listen_address': bad}
                with self.assertRaises(ConfigurationError) as ctx:
                    self._load(data)
                self.assertIn('Invalid listen address', str(ctx.exception))

    def test_listen_address(self):
        self.valid_config['server'] = {'listen_address': '127.0.0.1:9090'}
        config = self._load(self.valid_config)
        self.assertEqual(config.listen_address, '127.0.0.1:9090')

    def test_invalid_schedule_rejected_when_enabled(self):
        self.valid_config['sync'] = {'enabled': True, 'schedule': 'every tuesday'}
        with self.assertRaises(ConfigurationError) as ctx:
            self._load(self.valid_config)
        self.assertIn('Invalid sync.schedule', str(ctx.exception))

    def test_invalid_schedule_ignored_when_disabled(self):
        self.valid_config['sync'] = {'enabled': False, 'schedule': 'every tuesday'}
        config = self._load(self.valid_config)
        self.assertFalse(config.sync.enabled)

    def test_valid_schedule(self):
        self.valid_config['sync'] = {'enabled': True, 'schedule': '0 * * * *', 'filter_unknown_users': True}
        config = self._load(self.valid_config)
        self.assertTrue(config.sync.enabled)
        self.assertEqual(config.sync.schedule, '0 * * * *')
        self.assertTrue(config.sync.filter_unknown_users)

    def test_separate_mapping_file(self):
        """The mapping file's mapping key replaces the one in the main file."""
        main = copy.deepcopy(self.valid_config)
        del main['mapping']
        config_path = self._write(main)
        mapping_path = self._write({'mapping': [{'org_id': 9, 'teams': [
            {'name': 'sre', 'admin_user_filter': '(cn=sre)'}]}]}, name='mapping.yaml')

        config = ConfigLoader(config_path, mapping_path).load()
        self.assertEqual(config.mapping[0].org_id, 9)
        self.assertEqual(config.mapping[0].teams[0].name, 'sre')

    def test_missing_mapping_file(self):
        config_path = self._write(self.valid_config)
        with self.assertRaises(ConfigurationError):
            ConfigLoader(config_path, os.path.join(self.temp_dir, 'nope.yaml')).load()

    @patch.dict(os.environ, {
        'LDAP_BIND_PASSWORD': 'env_ldap_password',
        'GRAFANA_USER': 'env_user',
        'GRAFANA_PASSWORD': 'env_grafana_password',
        'GRAFANA_TOKEN': 'env_token',
    })
    def test_environment_overrides(self):
        """Test environment variable overrides for secrets."""
        config = self._load(self.valid_config)

        self.assertEqual(config.ldap.bind_password, 'env_ldap_password')
        self.assertEqual(config.grafana.user, 'env_user')
        self.assertEqual(config.grafana.password, 'env_grafana_password')
        self.assertEqual(config.grafana.token, 'env_token')

    @patch.dict(os.environ, {'LDAP_BIND_PASSWORD': 'from_env'})
    def test_environment_override_without_section_value(self):
        del self.valid_config['ldap']['bind_password']
        config = self._load(self.valid_config)
        self.assertEqual(config.ldap.bind_password, 'from_env')

    def test_config_path_from_environment(self):
        path = self._write(self.valid_config)
        with patch.dict(os.environ, {'CONFIG_PATH': path}):
            loader = ConfigLoader()
        self.assertEqual(loader.config_path, path)

    def test_empty_file(self):
        path = os.path.join(self.temp_dir, 'empty.yaml')
        open(path, 'w').close()
        with self.assertRaises(ConfigurationError):
            ConfigLoader(path).load()

    def test_load_config_convenience(self):
        config = load_config(self._write(self.valid_config))
        self.assertEqual(config.mapping[0].org_id, 5)


class TestBuildAppConfig(unittest.TestCase):

    def test_filters_mapped_from_yaml_keys(self):
        raw = {
            'ldap': {'host': 'h', 'port': 389, 'bind_dn': 'b', 'bind_password': '', 'base_dn': 'd',
                     'use_ssl': False, 'start_tls': True, 'verify_ssl': True,
                     'attributes': {'email': 'mail'}, 'connect_timeout': 3,
                     'receive_timeout': 4, 'page_size': 0},
            'grafana': {'url': 'http://g', 'user': '', 'password': '', 'token': 't',
                        'timeout': 5, 'verify_ssl': False},
            'sync': {'enabled': False, 'schedule': '* * * * *', 'filter_unknown_users': False},
            'server': {'listen_address': '127.0.0.1:9000'},
            'logging': {},
            'error_handling': {},
            'mapping': [{'org_id': 1, 'teams': [{'name': 'a', 'member_user_filter': '(m)'}]}],
        }
        config = build_app_config(raw)

        self.assertTrue(config.ldap.start_tls)
        self.assertEqual(config.ldap.connect_timeout, 3)
        self.assertEqual(config.ldap.receive_timeout, 4)
        self.assertEqual(config.grafana.token, 't')
        self.assertFalse(config.grafana.verify_ssl)
        self.assertEqual(config.listen_address, '127.0.0.1:9000')
        self.assertEqual(config.mapping[0].teams[0], TeamSpec('a', '', '(m)'))


if __name__ == '__main__':
    unittest.main()
