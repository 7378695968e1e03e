"""
PAM policy configuration — immutable snapshots behind an atomic reference.

The JSON document lives in ``app_settings['pam_config']``. Its core keys
mirror the seeded row (``max_elevation_duration_hours``,
``audit_retention_days``, ...); unknown keys are ignored so older rows keep
loading.

Readers call ``PolicyConfigStore.snapshot()`` once per operation and use
that object throughout. Writers build a new snapshot and swap it in; a
snapshot is never mutated.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import timedelta
from typing import Any

from core.pam.constants import (
    DEFAULT_AUDIT_RETENTION_DAYS,
    DEFAULT_MAX_ELEVATION_HOURS,
    DEFAULT_REQUEST_TIMEOUT_MINUTES,
    PAM_CONFIG_KEY,
    ElevationType,
    utcnow,
)
from core.pam.errors import PamInvalidArgument
from core.pam.store import guarded_io

logger = logging.getLogger(__name__)

DEFAULT_RESTRICTED_COMMANDS = (
    'format',
    'del /f /s /q c:\\*',
    'rm -rf /',
    'shutdown',
)

DEFAULT_HIGH_RISK_PROCESSES = (
    'cmd.exe',
    'powershell.exe',
    'regedit.exe',
    'services.msc',
)

DEFAULT_COMPLIANCE_RULES = {
    ElevationType.DOMAIN_ADMIN.value: ('sox', 'hipaa'),
    ElevationType.RUN_AS_SYSTEM.value: ('sox', 'hipaa'),
}

DEFAULT_COMPLIANCE_MODE = 'soc2'


@dataclass(frozen=True)
class NotificationSettings:
    notify_on_elevation_request: bool = True
    notify_on_high_risk_activity: bool = True
    notify_on_failed_elevation: bool = True
    slack_webhook: str | None = None
    teams_webhook: str | None = None

    @classmethod
    def from_dict(cls, data: dict | None) -> NotificationSettings:
        data = data or {}
        if not isinstance(data, dict):
            raise PamInvalidArgument('notifications must be an object')
        return cls(
            notify_on_elevation_request=_bool(data, 'notify_on_elevation_request', True),
            notify_on_high_risk_activity=_bool(data, 'notify_on_high_risk_activity', True),
            notify_on_failed_elevation=_bool(data, 'notify_on_failed_elevation', True),
            slack_webhook=_optional_str(data, 'slack_webhook'),
            teams_webhook=_optional_str(data, 'teams_webhook'),
        )

    def to_dict(self) -> dict:
        return {
            'notify_on_elevation_request': self.notify_on_elevation_request,
            'notify_on_high_risk_activity': self.notify_on_high_risk_activity,
            'notify_on_failed_elevation': self.notify_on_failed_elevation,
            'slack_webhook': self.slack_webhook,
            'teams_webhook': self.teams_webhook,
        }


@dataclass(frozen=True)
class PamPolicyConfig:
    """One consistent version of the PAM policy."""

    require_justification: bool = True
    approval_required_for_admin: bool = True
    approval_required_for_system: bool = True
    max_elevation_duration: timedelta = timedelta(hours=DEFAULT_MAX_ELEVATION_HOURS)
    audit_retention: timedelta = timedelta(days=DEFAULT_AUDIT_RETENTION_DAYS)
    request_timeout: timedelta = timedelta(minutes=DEFAULT_REQUEST_TIMEOUT_MINUTES)
    allowed_elevation_types: frozenset = frozenset(ElevationType)
    restricted_commands: tuple = DEFAULT_RESTRICTED_COMMANDS
    high_risk_processes: tuple = DEFAULT_HIGH_RISK_PROCESSES
    sensitive_domains: tuple = ()
    compliance_mode: str | None = DEFAULT_COMPLIANCE_MODE
    compliance_rules: tuple = tuple(
        (k, v) for k, v in DEFAULT_COMPLIANCE_RULES.items()
    )
    notifications: NotificationSettings = field(default_factory=NotificationSettings)
    version: int = 0

    @classmethod
    def from_dict(cls, data: dict, version: int = 0) -> PamPolicyConfig:
        """Build a snapshot from the stored JSON document.

        Raises:
            PamInvalidArgument: A value has the wrong type or range.
        """
        if not isinstance(data, dict):
            raise PamInvalidArgument('pam_config must be a JSON object')

        max_hours = _positive_number(data, 'max_elevation_duration_hours',
                                     DEFAULT_MAX_ELEVATION_HOURS)
        retention_days = _positive_number(data, 'audit_retention_days',
                                          DEFAULT_AUDIT_RETENTION_DAYS)
        timeout_minutes = _positive_number(data, 'request_timeout_minutes',
                                           DEFAULT_REQUEST_TIMEOUT_MINUTES)

        allowed = data.get('allowed_elevation_types')
        if allowed is None:
            allowed_types = frozenset(ElevationType)
        else:
            if not isinstance(allowed, list):
                raise PamInvalidArgument('allowed_elevation_types must be a list')
            try:
                allowed_types = frozenset(ElevationType(str(v).lower()) for v in allowed)
            except ValueError as e:
                raise PamInvalidArgument(f'allowed_elevation_types: {e}') from e

        rules = data.get('compliance_rules')
        if rules is None:
            rules = DEFAULT_COMPLIANCE_RULES
        if not isinstance(rules, dict):
            raise PamInvalidArgument('compliance_rules must be an object')
        compliance_rules = []
        for type_name, flags in sorted(rules.items()):
            try:
                ElevationType(str(type_name).lower())
            except ValueError as e:
                raise PamInvalidArgument(f'compliance_rules: {e}') from e
            if not isinstance(flags, (list, tuple)):
                raise PamInvalidArgument('compliance_rules values must be lists')
            compliance_rules.append(
                (str(type_name).lower(), tuple(str(f).lower() for f in flags))
            )

        mode = data.get('compliance_mode', DEFAULT_COMPLIANCE_MODE)
        if mode is not None and not isinstance(mode, str):
            raise PamInvalidArgument('compliance_mode must be a string')
        if mode is not None and mode.strip().lower() in ('', 'none'):
            mode = None

        return cls(
            require_justification=_bool(data, 'require_justification', True),
            approval_required_for_admin=_bool(data, 'approval_required_for_admin', True),
            approval_required_for_system=_bool(data, 'approval_required_for_system', True),
            max_elevation_duration=timedelta(hours=max_hours),
            audit_retention=timedelta(days=retention_days),
            request_timeout=timedelta(minutes=timeout_minutes),
            allowed_elevation_types=allowed_types,
            restricted_commands=_str_tuple(data, 'restricted_commands',
                                           DEFAULT_RESTRICTED_COMMANDS),
            high_risk_processes=_str_tuple(data, 'high_risk_processes',
                                           DEFAULT_HIGH_RISK_PROCESSES),
            sensitive_domains=_str_tuple(data, 'sensitive_domains', ()),
            compliance_mode=mode.strip().lower() if mode else None,
            compliance_rules=tuple(compliance_rules),
            notifications=NotificationSettings.from_dict(data.get('notifications')),
            version=version,
        )

    def to_dict(self) -> dict:
        return {
            'require_justification': self.require_justification,
            'approval_required_for_admin': self.approval_required_for_admin,
            'approval_required_for_system': self.approval_required_for_system,
            'max_elevation_duration_hours': self.max_elevation_duration.total_seconds() / 3600,
            'audit_retention_days': self.audit_retention.total_seconds() / 86400,
            'request_timeout_minutes': self.request_timeout.total_seconds() / 60,
            'allowed_elevation_types': sorted(t.value for t in self.allowed_elevation_types),
            'restricted_commands': list(self.restricted_commands),
            'high_risk_processes': list(self.high_risk_processes),
            'sensitive_domains': list(self.sensitive_domains),
            'compliance_mode': self.compliance_mode,
            'compliance_rules': {k: list(v) for k, v in self.compliance_rules},
            'notifications': self.notifications.to_dict(),
        }

    def flags_for(self, elevation_type: ElevationType) -> tuple:
        for type_name, flags in self.compliance_rules:
            if type_name == elevation_type.value:
                return flags
        return ()


class PolicyConfigStore:
    """Holds the current ``PamPolicyConfig`` and swaps it atomically.

    The database row is the durable copy; ``refresh()`` pulls it in, and
    ``save()`` writes it and swaps in the new snapshot.
    """

    def __init__(self, initial: PamPolicyConfig | None = None) -> None:
        self._lock = threading.Lock()
        self._current = initial or PamPolicyConfig()
        self._loaded = initial is not None

    def snapshot(self) -> PamPolicyConfig:
        return self._current

    def replace(self, config: PamPolicyConfig) -> PamPolicyConfig:
        """Swap in ``config`` with the next version number."""
        with self._lock:
            new = replace(config, version=self._current.version + 1)
            self._current = new
            self._loaded = True
        logger.info('[pam] policy config replaced (version=%s)', new.version)
        return new

    def ensure_loaded(self) -> PamPolicyConfig:
        if not self._loaded:
            self.refresh()
        return self._current

    def refresh(self) -> PamPolicyConfig:
        """Reload from ``app_settings``. Keeps the current snapshot if the row
        is missing or unchanged."""
        from models import AppSetting

        with guarded_io('load pam config'):
            row = AppSetting.query.filter_by(key=PAM_CONFIG_KEY).first()
        if row is None or row.value is None:
            self._loaded = True
            return self._current

        candidate = PamPolicyConfig.from_dict(row.value)
        if self._loaded and candidate.to_dict() == self._current.to_dict():
            return self._current
        return self.replace(candidate)

    def save(self, data: dict[str, Any]) -> PamPolicyConfig:
        """Validate, persist and activate a new policy document.

        Raises:
            PamInvalidArgument: The document does not validate.
        """
        from models import db, AppSetting

        candidate = PamPolicyConfig.from_dict(data)
        with guarded_io('save pam config'):
            row = AppSetting.query.filter_by(key=PAM_CONFIG_KEY).first()
            if row is None:
                row = AppSetting(key=PAM_CONFIG_KEY, description='PAM system configuration')
                db.session.add(row)
            row.value = candidate.to_dict()
            row.updated_at = utcnow()
            db.session.commit()
        return self.replace(candidate)


# ---------------------------------------------------------------------------
# Internal: field parsing
# ---------------------------------------------------------------------------

def _bool(data, key, default):
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise PamInvalidArgument(f'{key} must be a boolean')
    return value


def _positive_number(data, key, default):
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise PamInvalidArgument(f'{key} must be a number')
    if value <= 0:
        raise PamInvalidArgument(f'{key} must be greater than zero')
    return value


def _optional_str(data, key):
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise PamInvalidArgument(f'{key} must be a string')
    return value.strip() or None


def _str_tuple(data, key, default):
    value = data.get(key)
    if value is None:
        return tuple(default)
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise PamInvalidArgument(f'{key} must be a list of strings')
    return tuple(v.strip().lower() for v in value if v.strip())
