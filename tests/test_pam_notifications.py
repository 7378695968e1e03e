"""
Tests for webhook notifications
"""
import os
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
import requests

from core.pam.config import PamPolicyConfig
from core.pam.constants import ElevationType
from core.pam.notifications import Notifier, post_webhook


def _req(risk_level='medium'):
    return SimpleNamespace(
        id='req-1', session_id='sess-1', requested_by='Carol',
        elevation_type=ElevationType.RUN_AS_ADMIN, reason='Install driver',
        target_process='pnputil.exe', target_command=None,
        risk_score=40, risk_level=risk_level,
    )


def _config(**notifications):
    return PamPolicyConfig.from_dict({'notifications': notifications})


@pytest.mark.pam
class TestPostWebhook:

    @patch('core.pam.notifications.http_requests.post')
    def test_success(self, mock_post):
        mock_post.return_value = MagicMock(status_code=200)
        assert post_webhook('https://hooks.example.com/x', {'text': 'hi'}) is True
        mock_post.assert_called_once_with('https://hooks.example.com/x',
                                          json={'text': 'hi'}, timeout=5)

    @patch('core.pam.notifications.http_requests.post')
    def test_error_status(self, mock_post):
        mock_post.return_value = MagicMock(status_code=500)
        assert post_webhook('https://hooks.example.com/x', {}) is False

    @patch('core.pam.notifications.http_requests.post')
    def test_network_failure_is_swallowed(self, mock_post):
        mock_post.side_effect = requests.ConnectionError('unreachable')
        assert post_webhook('https://hooks.example.com/x', {}) is False


@pytest.mark.pam
class TestNotifier:

    @patch('core.pam.notifications.post_webhook')
    def test_request_goes_to_both_webhooks(self, mock_post):
        config = _config(slack_webhook='https://slack.example.com/a',
                         teams_webhook='https://teams.example.com/b')
        Notifier().on_requested(_req(), config)

        urls = [c.args[0] for c in mock_post.call_args_list]
        assert urls == ['https://slack.example.com/a', 'https://teams.example.com/b']
        assert 'Carol' in mock_post.call_args_list[0].args[1]['text']

    @patch('core.pam.notifications.post_webhook')
    def test_high_risk_sends_extra_message(self, mock_post):
        config = _config(slack_webhook='https://slack.example.com/a')
        Notifier().on_requested(_req(risk_level='critical'), config)

        texts = [c.args[1]['text'] for c in mock_post.call_args_list]
        assert len(texts) == 2
        assert texts[1].startswith('High-risk PAM elevation')

    @patch('core.pam.notifications.post_webhook')
    def test_disabled_flags(self, mock_post):
        config = _config(slack_webhook='https://slack.example.com/a',
                         notify_on_elevation_request=False,
                         notify_on_failed_elevation=False)
        notifier = Notifier()
        notifier.on_requested(_req(), config)
        notifier.on_failed(_req(), config, 'timeout')
        mock_post.assert_not_called()

    @patch('core.pam.notifications.post_webhook')
    def test_env_slack_fallback(self, mock_post):
        with patch.dict(os.environ, {'SLACK_WEBHOOK_URL': 'https://slack.example.com/env'}):
            Notifier().on_failed(_req(), _config(), 'session crashed')
        mock_post.assert_called_once()
        url, payload = mock_post.call_args.args
        assert url == 'https://slack.example.com/env'
        assert 'session crashed' in payload['text']

    def test_executor_receives_posts(self):
        executor = MagicMock()
        config = _config(teams_webhook='https://teams.example.com/b')
        Notifier(executor).on_failed(_req(), config, 'revoked')
        executor.submit.assert_called_once()
        assert executor.submit.call_args.args[1] == 'https://teams.example.com/b'

    @patch('core.pam.notifications.post_webhook')
    def test_no_targets(self, mock_post):
        Notifier().on_requested(_req(), _config())
        mock_post.assert_not_called()
