"""
Policy evaluator — risk scoring and the auto-approval decision.

Pure functions of (draft, config): no database access, no clock. The engine
calls ``validate_draft`` then ``evaluate`` with the same config snapshot.

Scores are integers. The elevation type sets the floor; a free-form command,
a high-risk target process and a sensitive domain each add on top, so a
riskier type never scores below a milder one with the same extras.
"""
from __future__ import annotations

from dataclasses import dataclass

from core.pam.config import PamPolicyConfig
from core.pam.constants import ElevationType, RiskLevel
from core.pam.errors import PamInvalidArgument

BASE_SCORE = 10

TYPE_WEIGHTS = {
    ElevationType.RUN_AS_USER: 10,
    ElevationType.RUN_AS_ADMIN: 30,
    ElevationType.LOCAL_ADMIN: 30,
    ElevationType.RUN_AS_SERVICE: 40,
    ElevationType.RUN_AS_SYSTEM: 50,
    ElevationType.DOMAIN_ADMIN: 50,
}

COMMAND_PRESENT_WEIGHT = 20
SENSITIVE_DOMAIN_WEIGHT = 15
HIGH_RISK_PROCESS_WEIGHT = 10

COMMAND_RISK_WEIGHTS = {
    RiskLevel.CRITICAL: 40,
    RiskLevel.HIGH: 30,
    RiskLevel.MEDIUM: 20,
    RiskLevel.LOW: 0,
}

# Substring patterns, checked most severe first.
COMMAND_RISK_PATTERNS = (
    (RiskLevel.CRITICAL, ('format', 'del /f /s /q', 'rm -rf /', 'shutdown', 'reboot')),
    (RiskLevel.HIGH, ('reg delete', 'net user', 'net localgroup', 'gpupdate', 'sc delete')),
    (RiskLevel.MEDIUM, ('reg add', 'netsh', 'wmic', 'powershell')),
)

# Upper bounds (exclusive) of each band.
RISK_BANDS = (
    (40, RiskLevel.LOW),
    (60, RiskLevel.MEDIUM),
    (90, RiskLevel.HIGH),
)

ELEVATED_ACCOUNTS = {
    ElevationType.RUN_AS_ADMIN: 'Administrator',
    ElevationType.RUN_AS_SYSTEM: 'SYSTEM',
    ElevationType.DOMAIN_ADMIN: 'Domain Administrator',
    ElevationType.LOCAL_ADMIN: 'Local Administrator',
}


@dataclass(frozen=True)
class ElevationDraft:
    """Caller-supplied intent, before anything is stored."""

    session_id: str
    user_id: str
    requester: str
    elevation_type: ElevationType
    reason: str
    domain: str | None = None
    target_process: str | None = None
    target_command: str | None = None
    target_account: str | None = None


@dataclass(frozen=True)
class PolicyDecision:
    risk_score: int
    risk_level: RiskLevel
    auto_approve: bool
    compliance_flags: tuple
    factors: tuple = ()

    def to_dict(self) -> dict:
        return {
            'risk_score': self.risk_score,
            'risk_level': self.risk_level.value,
            'auto_approve': self.auto_approve,
            'compliance_flags': list(self.compliance_flags),
            'factors': list(self.factors),
        }


def validate_draft(draft: ElevationDraft, config: PamPolicyConfig) -> None:
    """Reject drafts the policy never accepts.

    Raises:
        PamInvalidArgument: Missing justification, disallowed type, or a
            restricted command pattern.
    """
    if config.require_justification and not (draft.reason or '').strip():
        raise PamInvalidArgument('reason is required by policy')

    if draft.elevation_type not in config.allowed_elevation_types:
        raise PamInvalidArgument(
            f'Elevation type {draft.elevation_type.value} is not allowed by policy'
        )

    if draft.target_command:
        command = draft.target_command.lower()
        for restricted in config.restricted_commands:
            if restricted and restricted in command:
                raise PamInvalidArgument(
                    f'Command contains restricted pattern: {restricted}'
                )


def evaluate(draft: ElevationDraft, config: PamPolicyConfig) -> PolicyDecision:
    """Score the draft and decide whether it is auto-approved."""
    score = BASE_SCORE + TYPE_WEIGHTS[draft.elevation_type]
    factors = [f'type:{draft.elevation_type.value}']

    if draft.target_command:
        score += COMMAND_PRESENT_WEIGHT
        factors.append('target_command')
        command_risk = assess_command_risk(draft.target_command)
        if command_risk is not RiskLevel.LOW:
            score += COMMAND_RISK_WEIGHTS[command_risk]
            factors.append(f'command_risk:{command_risk.value}')

    if draft.target_process and _is_high_risk_process(draft.target_process, config):
        score += HIGH_RISK_PROCESS_WEIGHT
        factors.append('high_risk_process')

    if draft.domain and _is_sensitive_domain(draft.domain, config):
        score += SENSITIVE_DOMAIN_WEIGHT
        factors.append('sensitive_domain')

    return PolicyDecision(
        risk_score=score,
        risk_level=risk_level_for(score),
        auto_approve=should_auto_approve(draft.elevation_type, config),
        compliance_flags=compliance_flags_for(draft.elevation_type, config),
        factors=tuple(factors),
    )


def should_auto_approve(elevation_type: ElevationType, config: PamPolicyConfig) -> bool:
    if elevation_type is ElevationType.DOMAIN_ADMIN:
        return False
    if elevation_type in (ElevationType.RUN_AS_ADMIN, ElevationType.LOCAL_ADMIN,
                          ElevationType.RUN_AS_USER):
        return not config.approval_required_for_admin
    if elevation_type in (ElevationType.RUN_AS_SYSTEM, ElevationType.RUN_AS_SERVICE):
        return not config.approval_required_for_system
    raise ValueError(f'Unhandled elevation type: {elevation_type!r}')


def compliance_flags_for(elevation_type: ElevationType, config: PamPolicyConfig) -> tuple:
    """Flags declared for the type, plus the global compliance mode."""
    flags = set(config.flags_for(elevation_type))
    if config.compliance_mode:
        flags.add(config.compliance_mode)
    return tuple(sorted(flags))


def assess_command_risk(command: str) -> RiskLevel:
    lowered = command.lower()
    for level, patterns in COMMAND_RISK_PATTERNS:
        if any(p in lowered for p in patterns):
            return level
    return RiskLevel.LOW


def risk_level_for(score: int) -> RiskLevel:
    for upper, level in RISK_BANDS:
        if score < upper:
            return level
    return RiskLevel.CRITICAL


def elevated_account(elevation_type: ElevationType, target_account: str | None = None) -> str:
    """Account the elevated action runs as."""
    if elevation_type is ElevationType.RUN_AS_USER:
        return target_account or 'user'
    if elevation_type is ElevationType.RUN_AS_SERVICE:
        return target_account or 'NetworkService'
    return ELEVATED_ACCOUNTS[elevation_type]


def _is_high_risk_process(process: str, config: PamPolicyConfig) -> bool:
    name = process.strip().lower().replace('\\', '/').rsplit('/', 1)[-1]
    return name in config.high_risk_processes


def _is_sensitive_domain(domain: str, config: PamPolicyConfig) -> bool:
    domain = domain.strip().lower()
    return any(
        domain == d or domain.endswith('.' + d)
        for d in config.sensitive_domains
    )
