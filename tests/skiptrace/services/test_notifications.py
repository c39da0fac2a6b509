"""Tests for skiptrace.services.notifications: Slack alerts."""
from unittest.mock import patch

import requests

from skiptrace.services import notifications


def test_no_webhook_is_a_no_op():
    with patch('skiptrace.services.notifications.SLACK_WEBHOOK_URL', None), \
         patch('skiptrace.services.notifications.requests.post') as post:
        notifications.notify_run_complete({'run_id': 'abc'})
        notifications.notify_configuration_error('abc', 'bad key')
    post.assert_not_called()


def test_run_complete_posts_summary():
    with patch('skiptrace.services.notifications.SLACK_WEBHOOK_URL', 'https://hooks.example/x'), \
         patch('skiptrace.services.notifications.requests.post') as post:
        notifications.notify_run_complete({'run_id': 'abcdef123', 'source_label': 'county list',
                                           'total': 20, 'done': 19, 'failed': 1, 'cost_cents': 228})
    blocks = post.call_args[1]['json']['blocks']
    assert 'county list' in blocks[0]['text']['text']
    assert blocks[-1]['elements'][0]['text'] == 'Cost: $2.28'


def test_configuration_alert_mentions_run():
    with patch('skiptrace.services.notifications.SLACK_WEBHOOK_URL', 'https://hooks.example/x'), \
         patch('skiptrace.services.notifications.requests.post') as post:
        notifications.notify_configuration_error('run-9', 'provider rejected credentials')
    text = post.call_args[1]['json']['blocks'][1]['text']['text']
    assert 'run-9' in text
    assert 'paused' in text


def test_webhook_failure_is_logged_not_raised():
    with patch('skiptrace.services.notifications.SLACK_WEBHOOK_URL', 'https://hooks.example/x'), \
         patch('skiptrace.services.notifications.requests.post',
               side_effect=requests.exceptions.ConnectionError('down')):
        notifications.notify_run_complete({'run_id': 'abc'})
        notifications.notify_configuration_error('abc', 'bad key')
