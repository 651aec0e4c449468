#!/usr/bin/env python3
"""
Unit tests for the retry helpers.
"""

import os
import sys
import unittest
from unittest.mock import Mock, patch, call

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from query_group_sync.retry import (
    MaxRetriesExceeded,
    RetryableError,
    create_retry_callback,
    is_retryable_error,
    retry_call,
)


class TestIsRetryableError(unittest.TestCase):
    """Test cases for is_retryable_error."""

    def test_retryable_types(self):
        self.assertTrue(is_retryable_error(RetryableError("anything")))
        self.assertTrue(is_retryable_error(ConnectionError("reset")))
        self.assertTrue(is_retryable_error(TimeoutError()))

    def test_message_text_is_not_enough(self):
        self.assertFalse(is_retryable_error(Exception("Connection timed out")))
        self.assertFalse(is_retryable_error(Exception("Server busy, try later")))

    def test_permanent_errors(self):
        self.assertFalse(is_retryable_error(ValueError("Invalid search filter")))
        self.assertFalse(is_retryable_error(KeyError("objectGUID")))


@patch('query_group_sync.retry.time.sleep')
class TestRetryCall(unittest.TestCase):
    """Test cases for retry_call."""

    def test_success_first_attempt(self, mock_sleep):
        func = Mock(return_value='ok')
        self.assertEqual(retry_call(func, ('a',), {'b': 1}), 'ok')
        func.assert_called_once_with('a', b=1)
        mock_sleep.assert_not_called()

    def test_success_after_transient_failures(self, mock_sleep):
        func = Mock(side_effect=[RetryableError("busy"), RetryableError("busy"), 'ok'])
        self.assertEqual(retry_call(func, max_attempts=3, delay=2, backoff=2), 'ok')
        self.assertEqual(mock_sleep.call_args_list, [call(2), call(4)])

    def test_non_retryable_error_propagates_immediately(self, mock_sleep):
        func = Mock(side_effect=ValueError("bad input"))
        with self.assertRaises(ValueError):
            retry_call(func, max_attempts=5)
        func.assert_called_once()

    def test_max_retries_exceeded(self, mock_sleep):
        error = RetryableError("still down")
        func = Mock(side_effect=error)
        with self.assertRaises(MaxRetriesExceeded) as context:
            retry_call(func, max_attempts=3, delay=0)
        self.assertEqual(context.exception.attempts, 3)
        self.assertIs(context.exception.last_exception, error)
        self.assertIs(context.exception.__cause__, error)
        self.assertEqual(func.call_count, 3)

    def test_custom_predicate(self, mock_sleep):
        func = Mock(side_effect=[KeyError("flaky"), 'ok'])
        result = retry_call(func, should_retry=lambda e: isinstance(e, KeyError), delay=0)
        self.assertEqual(result, 'ok')

        func = Mock(side_effect=RetryableError("timeout"))
        with self.assertRaises(RetryableError):
            retry_call(func, should_retry=lambda e: False)

    def test_on_retry_callback(self, mock_sleep):
        on_retry = Mock()
        error = RetryableError("timeout")
        func = Mock(side_effect=[error, 'ok'])
        retry_call(func, delay=0, on_retry=on_retry)
        on_retry.assert_called_once_with(1, error)

    def test_failing_callback_does_not_stop_retries(self, mock_sleep):
        func = Mock(side_effect=[RetryableError("timeout"), 'ok'])
        self.assertEqual(retry_call(func, delay=0, on_retry=Mock(side_effect=RuntimeError("boom"))), 'ok')

    def test_at_least_one_attempt(self, mock_sleep):
        func = Mock(return_value='ok')
        self.assertEqual(retry_call(func, max_attempts=0), 'ok')


class TestRetryCallback(unittest.TestCase):
    """Test cases for create_retry_callback."""

    def test_logs_warning(self):
        callback = create_retry_callback("Directory search")
        with self.assertLogs('query_group_sync.retry', level='WARNING') as captured:
            callback(2, RetryableError("socket timed out"))
        self.assertIn('Directory search failed on attempt 2', captured.output[0])


if __name__ == '__main__':
    unittest.main()
