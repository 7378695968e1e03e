"""
Notification dispatch for PAM events — Slack and Teams webhooks.

Sends are best-effort: failures are logged and never reach the engine.
When an executor is configured, posts happen off the caller's thread.
"""
import logging
import os

import requests as http_requests

logger = logging.getLogger(__name__)

WEBHOOK_TIMEOUT_SECONDS = 5


def post_webhook(url: str, payload: dict) -> bool:
    """POST ``payload`` as JSON. Returns True on a 2xx response."""
    try:
        resp = http_requests.post(url, json=payload, timeout=WEBHOOK_TIMEOUT_SECONDS)
        return 200 <= resp.status_code < 300
    except http_requests.RequestException as e:
        logger.warning('[pam] webhook notification failed: %s', e)
        return False


def format_request_message(req) -> str:
    return (
        f"PAM elevation requested: {req.requested_by} wants {req.elevation_type.value} "
        f"on session {req.session_id} (risk {req.risk_score}/{req.risk_level}). "
        f"Reason: {req.reason}"
    )


def format_high_risk_message(req) -> str:
    return (
        f"High-risk PAM elevation: {req.requested_by} {req.elevation_type.value} "
        f"target={req.target_process or '-'} command={req.target_command or '-'} "
        f"(risk {req.risk_score}/{req.risk_level})"
    )


def format_failure_message(req, reason) -> str:
    return (
        f"PAM elevation {req.id} ended as failed for {req.requested_by} "
        f"({req.elevation_type.value}): {reason}"
    )


class Notifier:
    """Routes engine events to the webhooks named in the policy config.

    ``executor`` is any object with ``submit(fn, *args)``; None sends inline.
    """

    def __init__(self, executor=None):
        self._executor = executor

    def on_requested(self, req, config):
        settings = config.notifications
        if settings.notify_on_elevation_request:
            self._dispatch(settings, format_request_message(req))
        if settings.notify_on_high_risk_activity and req.risk_level in ('high', 'critical'):
            self._dispatch(settings, format_high_risk_message(req))

    def on_failed(self, req, config, reason):
        settings = config.notifications
        if settings.notify_on_failed_elevation:
            self._dispatch(settings, format_failure_message(req, reason))

    def _dispatch(self, settings, message):
        targets = []
        slack_url = settings.slack_webhook or os.environ.get('SLACK_WEBHOOK_URL')
        if slack_url:
            targets.append((slack_url, {'text': message}))
        if settings.teams_webhook:
            targets.append((settings.teams_webhook, {'text': message}))

        for url, payload in targets:
            if self._executor is None:
                post_webhook(url, payload)
            else:
                self._executor.submit(post_webhook, url, payload)
        return len(targets)
