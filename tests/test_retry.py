#!/usr/bin/env python3
"""
Unit tests for retrying a pass on LDAP connect failures.
"""

import os
import sys
import unittest
from unittest.mock import Mock, call, patch

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from grafana_team_sync.errors import DirectoryBindError, DirectoryConnectError
from grafana_team_sync.retry import retry_on_connect_failure


@patch('grafana_team_sync.retry.time.sleep')
class TestRetryOnConnectFailure(unittest.TestCase):

    def setUp(self):
        self.error_handling = {'max_retries': 2, 'retry_wait_seconds': 5}

    def test_success_without_retries(self, mock_sleep):
        func = Mock(return_value='ok')
        self.assertEqual(retry_on_connect_failure(func, self.error_handling), 'ok')
        func.assert_called_once_with()
        mock_sleep.assert_not_called()

    def test_succeeds_after_retries(self, mock_sleep):
        func = Mock(side_effect=[DirectoryConnectError('refused'), DirectoryConnectError('refused'), 'ok'])

        self.assertEqual(retry_on_connect_failure(func, self.error_handling), 'ok')
        self.assertEqual(mock_sleep.call_args_list, [call(5), call(5)])

    def test_last_connect_error_reraised(self, mock_sleep):
        errors = [DirectoryConnectError('first'), DirectoryConnectError('second'), DirectoryConnectError('third')]
        func = Mock(side_effect=errors)

        with self.assertRaises(DirectoryConnectError) as ctx:
            retry_on_connect_failure(func, self.error_handling)

        self.assertIs(ctx.exception, errors[-1])
        self.assertEqual(func.call_count, 3)
        self.assertEqual(mock_sleep.call_count, 2)

    def test_bind_error_not_retried(self, mock_sleep):
        func = Mock(side_effect=DirectoryBindError('invalidCredentials'))

        with self.assertRaises(DirectoryBindError):
            retry_on_connect_failure(func, self.error_handling)
        func.assert_called_once_with()
        mock_sleep.assert_not_called()

    def test_zero_retries_makes_one_attempt(self, mock_sleep):
        func = Mock(side_effect=DirectoryConnectError('refused'))

        with self.assertRaises(DirectoryConnectError):
            retry_on_connect_failure(func, {'max_retries': 0, 'retry_wait_seconds': 5})
        func.assert_called_once_with()
        mock_sleep.assert_not_called()

    def test_defaults_when_section_empty(self, mock_sleep):
        func = Mock(side_effect=DirectoryConnectError('refused'))

        with self.assertRaises(DirectoryConnectError):
            retry_on_connect_failure(func, {})
        self.assertEqual(func.call_count, 3)
        self.assertEqual(mock_sleep.call_args_list, [call(5), call(5)])

    def test_logs_warning_per_retry(self, mock_sleep):
        func = Mock(side_effect=[DirectoryConnectError('refused'), 'ok'])

        with self.assertLogs('grafana_team_sync.retry', level='WARNING') as captured:
            retry_on_connect_failure(func, self.error_handling)

        self.assertEqual(len(captured.output), 1)
        self.assertIn('retry 1/2 in 5 seconds', captured.output[0])
        self.assertIn('refused', captured.output[0])


if __name__ == '__main__':
    unittest.main()
