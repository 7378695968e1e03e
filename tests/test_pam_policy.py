"""
Tests for the PAM policy evaluator.

Covers: risk scoring order by type, command/domain/process modifiers, risk
bands, the auto-approval predicate, compliance flags, draft validation.
"""
import pytest

from core.pam.config import PamPolicyConfig
from core.pam.constants import ElevationType, RiskLevel
from core.pam.errors import PamInvalidArgument
from core.pam.policy import (
    ElevationDraft,
    assess_command_risk,
    elevated_account,
    evaluate,
    risk_level_for,
    should_auto_approve,
    validate_draft,
)


def _draft(elevation_type=ElevationType.RUN_AS_ADMIN, **overrides):
    fields = dict(
        session_id='sess-1',
        user_id='carol',
        requester='Carol',
        elevation_type=elevation_type,
        reason='Install printer driver',
    )
    fields.update(overrides)
    return ElevationDraft(**fields)


@pytest.mark.pam
class TestRiskScoring:

    def test_type_ordering_is_monotonic(self):
        config = PamPolicyConfig()
        score = {t: evaluate(_draft(t), config).risk_score for t in ElevationType}

        assert score[ElevationType.RUN_AS_USER] < score[ElevationType.RUN_AS_ADMIN]
        assert score[ElevationType.RUN_AS_ADMIN] == score[ElevationType.LOCAL_ADMIN]
        assert score[ElevationType.LOCAL_ADMIN] < score[ElevationType.RUN_AS_SERVICE]
        assert score[ElevationType.RUN_AS_SERVICE] < score[ElevationType.RUN_AS_SYSTEM]
        assert score[ElevationType.RUN_AS_SYSTEM] == score[ElevationType.DOMAIN_ADMIN]

    def test_base_scores(self):
        config = PamPolicyConfig()
        assert evaluate(_draft(ElevationType.RUN_AS_USER), config).risk_score == 20
        assert evaluate(_draft(ElevationType.RUN_AS_ADMIN), config).risk_score == 40
        assert evaluate(_draft(ElevationType.DOMAIN_ADMIN), config).risk_score == 60

    def test_target_command_increases_score(self):
        config = PamPolicyConfig()
        plain = evaluate(_draft(), config)
        with_cmd = evaluate(_draft(target_command='ipconfig /all'), config)

        assert with_cmd.risk_score == plain.risk_score + 20
        assert 'target_command' in with_cmd.factors

    def test_risky_command_adds_its_own_weight(self):
        config = PamPolicyConfig()
        benign = evaluate(_draft(target_command='ipconfig /all'), config)
        risky = evaluate(_draft(target_command='net user bob /add'), config)

        assert risky.risk_score == benign.risk_score + 30
        assert 'command_risk:high' in risky.factors

    def test_sensitive_domain_increases_score(self):
        config = PamPolicyConfig.from_dict({'sensitive_domains': ['finance.corp']})
        plain = evaluate(_draft(domain='eng.corp'), config)
        sensitive = evaluate(_draft(domain='EU.Finance.Corp'), config)

        assert sensitive.risk_score == plain.risk_score + 15
        assert 'sensitive_domain' in sensitive.factors

    def test_high_risk_process_matches_basename(self):
        config = PamPolicyConfig()
        decision = evaluate(
            _draft(target_process='C:\\Windows\\System32\\WindowsPowerShell\\v1.0\\PowerShell.exe'),
            config,
        )
        assert 'high_risk_process' in decision.factors
        assert decision.risk_score == 50

    def test_score_is_deterministic(self):
        config = PamPolicyConfig()
        draft = _draft(ElevationType.RUN_AS_SYSTEM, target_command='sc query')
        assert evaluate(draft, config) == evaluate(draft, config)


@pytest.mark.pam
class TestRiskBands:

    @pytest.mark.parametrize('score,level', [
        (20, RiskLevel.LOW),
        (39, RiskLevel.LOW),
        (40, RiskLevel.MEDIUM),
        (59, RiskLevel.MEDIUM),
        (60, RiskLevel.HIGH),
        (89, RiskLevel.HIGH),
        (90, RiskLevel.CRITICAL),
        (175, RiskLevel.CRITICAL),
    ])
    def test_bands(self, score, level):
        assert risk_level_for(score) is level

    def test_command_risk_levels(self):
        assert assess_command_risk('FORMAT D:') is RiskLevel.CRITICAL
        assert assess_command_risk('reg delete HKLM\\Software\\X') is RiskLevel.HIGH
        assert assess_command_risk('netsh advfirewall show') is RiskLevel.MEDIUM
        assert assess_command_risk('whoami') is RiskLevel.LOW


@pytest.mark.pam
class TestAutoApproval:

    def test_domain_admin_never_auto_approved(self):
        config = PamPolicyConfig.from_dict({
            'approval_required_for_admin': False,
            'approval_required_for_system': False,
        })
        assert should_auto_approve(ElevationType.DOMAIN_ADMIN, config) is False

    def test_admin_types_follow_admin_flag(self):
        open_config = PamPolicyConfig.from_dict({'approval_required_for_admin': False})
        closed_config = PamPolicyConfig()
        for t in (ElevationType.RUN_AS_ADMIN, ElevationType.LOCAL_ADMIN,
                  ElevationType.RUN_AS_USER):
            assert should_auto_approve(t, open_config) is True
            assert should_auto_approve(t, closed_config) is False

    def test_system_types_follow_system_flag(self):
        open_config = PamPolicyConfig.from_dict({'approval_required_for_system': False})
        for t in (ElevationType.RUN_AS_SYSTEM, ElevationType.RUN_AS_SERVICE):
            assert should_auto_approve(t, open_config) is True
            assert should_auto_approve(t, PamPolicyConfig()) is False

    def test_admin_flag_does_not_open_system_types(self):
        config = PamPolicyConfig.from_dict({'approval_required_for_admin': False})
        assert should_auto_approve(ElevationType.RUN_AS_SYSTEM, config) is False


@pytest.mark.pam
class TestComplianceFlags:

    def test_domain_admin_gets_sox_and_hipaa(self):
        decision = evaluate(_draft(ElevationType.DOMAIN_ADMIN), PamPolicyConfig())
        assert 'sox' in decision.compliance_flags
        assert 'hipaa' in decision.compliance_flags

    def test_compliance_mode_is_attached(self):
        decision = evaluate(_draft(ElevationType.RUN_AS_USER), PamPolicyConfig())
        assert decision.compliance_flags == ('soc2',)

    def test_custom_rules_and_no_mode(self):
        config = PamPolicyConfig.from_dict({
            'compliance_mode': 'none',
            'compliance_rules': {'run_as_service': ['pci']},
        })
        assert evaluate(_draft(ElevationType.RUN_AS_SERVICE), config).compliance_flags == ('pci',)
        assert evaluate(_draft(ElevationType.DOMAIN_ADMIN), config).compliance_flags == ()


@pytest.mark.pam
class TestValidateDraft:

    def test_empty_reason_rejected_when_required(self):
        with pytest.raises(PamInvalidArgument):
            validate_draft(_draft(reason='   '), PamPolicyConfig())

    def test_empty_reason_allowed_when_not_required(self):
        config = PamPolicyConfig.from_dict({'require_justification': False})
        validate_draft(_draft(reason=''), config)

    def test_disallowed_type_rejected(self):
        config = PamPolicyConfig.from_dict({'allowed_elevation_types': ['run_as_user']})
        with pytest.raises(PamInvalidArgument, match='not allowed'):
            validate_draft(_draft(ElevationType.RUN_AS_ADMIN), config)

    def test_restricted_command_rejected(self):
        with pytest.raises(PamInvalidArgument, match='restricted'):
            validate_draft(_draft(target_command='sudo rm -rf / --no-preserve-root'),
                           PamPolicyConfig())


@pytest.mark.pam
class TestElevatedAccount:

    def test_fixed_accounts(self):
        assert elevated_account(ElevationType.RUN_AS_SYSTEM) == 'SYSTEM'
        assert elevated_account(ElevationType.DOMAIN_ADMIN) == 'Domain Administrator'

    def test_target_account_used_for_user_and_service(self):
        assert elevated_account(ElevationType.RUN_AS_USER, 'svc-backup') == 'svc-backup'
        assert elevated_account(ElevationType.RUN_AS_SERVICE) == 'NetworkService'
