"""Tests for the trust policy document model and its evaluation."""

import json
from urllib.parse import quote

import pytest
from eks_lbc_diagnostics import (
    CheckStatus,
    DiagnosticsConfig,
    RiskTier,
    RuleEvaluator,
    TrustPolicyDocument,
    TrustPolicyParseError,
    build_trust_policy,
)

from fakes import OIDC_PROVIDER_ARN, OIDC_PROVIDER_ID, SUBJECT


def trust_checks(checks):
    return [check for check in checks if check.name.startswith("trust_policy")]


class TestTrustPolicyDocument:
    """Test cases for TrustPolicyDocument.parse."""

    def test_parse_canonical_document(self):
        document = TrustPolicyDocument.parse(build_trust_policy(OIDC_PROVIDER_ARN, OIDC_PROVIDER_ID, SUBJECT))

        statement = document.web_identity_statement()
        assert statement.federated == [OIDC_PROVIDER_ARN]
        assert statement.actions == ["sts:AssumeRoleWithWebIdentity"]
        assert statement.condition_values(f"{OIDC_PROVIDER_ID}:aud") == ["sts.amazonaws.com"]
        assert statement.condition_matches(f"{OIDC_PROVIDER_ID}:sub", SUBJECT) is True

    def test_parse_json_text(self):
        raw = json.dumps(build_trust_policy(OIDC_PROVIDER_ARN, OIDC_PROVIDER_ID, SUBJECT))
        assert TrustPolicyDocument.parse(raw).version == "2012-10-17"

    def test_parse_url_encoded_text(self):
        raw = quote(json.dumps(build_trust_policy(OIDC_PROVIDER_ARN, OIDC_PROVIDER_ID, SUBJECT)))
        document = TrustPolicyDocument.parse(raw)
        assert document.web_identity_statement().federated == [OIDC_PROVIDER_ARN]

    def test_single_statement_object_and_list_values(self):
        document = TrustPolicyDocument.parse(
            {
                "Version": "2012-10-17",
                "Statement": {
                    "Effect": "Allow",
                    "Principal": {"Federated": [OIDC_PROVIDER_ARN]},
                    "Action": ["sts:AssumeRoleWithWebIdentity", "sts:TagSession"],
                },
            }
        )
        statement = document.web_identity_statement()
        assert statement.actions == ["sts:AssumeRoleWithWebIdentity", "sts:TagSession"]

    def test_prefers_federated_statement(self):
        document = TrustPolicyDocument.parse(
            {
                "Statement": [
                    {"Effect": "Allow", "Principal": {"Service": "ec2.amazonaws.com"}, "Action": "sts:AssumeRole"},
                    {"Effect": "Allow", "Principal": {"Federated": OIDC_PROVIDER_ARN}, "Action": "sts:AssumeRoleWithWebIdentity"},
                ]
            }
        )
        assert document.web_identity_statement().federated == [OIDC_PROVIDER_ARN]

    def test_string_like_wildcard_matches(self):
        document = TrustPolicyDocument.parse(
            {
                "Statement": [
                    {
                        "Effect": "Allow",
                        "Principal": {"Federated": OIDC_PROVIDER_ARN},
                        "Action": "sts:AssumeRoleWithWebIdentity",
                        "Condition": {"StringLike": {f"{OIDC_PROVIDER_ID}:sub": "system:serviceaccount:kube-system:*"}},
                    }
                ]
            }
        )
        statement = document.web_identity_statement()
        assert statement.condition_matches(f"{OIDC_PROVIDER_ID}:sub", SUBJECT) is True
        assert statement.condition_matches(f"{OIDC_PROVIDER_ID}:aud", "sts.amazonaws.com") is None

    @pytest.mark.parametrize("raw", ["{not json", "[]", 42])
    def test_invalid_documents_raise(self, raw):
        with pytest.raises(TrustPolicyParseError):
            TrustPolicyDocument.parse(raw)


class TestTrustPolicyEvaluation:
    """Trust policy findings produced by RuleEvaluator."""

    @pytest.fixture
    def evaluator(self):
        return RuleEvaluator(DiagnosticsConfig())

    def test_correct_policy_passes(self, evaluator, healthy_facts):
        checks = trust_checks(evaluator.evaluate(healthy_facts))
        assert [check.name for check in checks] == [
            "trust_policy.principal",
            "trust_policy.action",
            "trust_policy.aud",
            "trust_policy.sub",
        ]
        assert all(check.status == CheckStatus.PASS for check in checks)

    def test_missing_sub_condition_fails_once(self, evaluator, healthy_facts):
        document = build_trust_policy(OIDC_PROVIDER_ARN, OIDC_PROVIDER_ID, SUBJECT)
        del document["Statement"][0]["Condition"]["StringEquals"][f"{OIDC_PROVIDER_ID}:sub"]
        healthy_facts.trust_policy = TrustPolicyDocument.parse(document)

        failing = [check for check in trust_checks(evaluator.evaluate(healthy_facts)) if check.failed]

        assert [check.name for check in failing] == ["trust_policy.sub"]
        fix = failing[0].remediation
        assert fix.action == "update_trust_policy"
        assert fix.risk == RiskTier.HIGH
        conditions = fix.params["document"]["Statement"][0]["Condition"]["StringEquals"]
        assert conditions[f"{OIDC_PROVIDER_ID}:sub"] == "system:serviceaccount:kube-system:aws-load-balancer-controller"

    def test_wrong_subject_is_mismatch(self, evaluator, healthy_facts):
        document = build_trust_policy(OIDC_PROVIDER_ARN, OIDC_PROVIDER_ID, "system:serviceaccount:default:other")
        healthy_facts.trust_policy = TrustPolicyDocument.parse(document)

        sub_check = [check for check in evaluator.evaluate(healthy_facts) if check.name == "trust_policy.sub"][0]

        assert sub_check.failed
        assert "MISMATCH" in sub_check.message
        assert sub_check.observed == "system:serviceaccount:default:other"

    def test_only_first_failure_carries_rewrite(self, evaluator, healthy_facts):
        stale_arn = "arn:aws:iam::123456789012:oidc-provider/oidc.eks.eu-north-1.amazonaws.com/id/OLD"
        healthy_facts.trust_policy = TrustPolicyDocument.parse(
            {
                "Statement": [
                    {"Effect": "Allow", "Principal": {"Federated": stale_arn}, "Action": "sts:AssumeRole"}
                ]
            }
        )

        failing = [check for check in trust_checks(evaluator.evaluate(healthy_facts)) if check.failed]

        assert len(failing) == 4
        assert sum(1 for check in failing if check.remediation) == 1
        assert failing[0].name == "trust_policy.principal"
        assert failing[0].remediation is not None
        assert failing[0].observed == stale_arn

    def test_no_rewrite_without_oidc_issuer(self, evaluator, healthy_facts):
        healthy_facts.oidc_issuer = None
        healthy_facts.oidc_provider = None

        failing = [check for check in trust_checks(evaluator.evaluate(healthy_facts)) if check.failed]

        assert failing
        assert all(check.remediation is None for check in failing)
        assert all("OIDC" in check.suggestion for check in failing)

    def test_unreadable_document(self, evaluator, healthy_facts):
        healthy_facts.trust_policy = None
        healthy_facts.unavailable["trust_policy"] = "Trust policy is not valid JSON"

        checks = trust_checks(evaluator.evaluate(healthy_facts))

        assert len(checks) == 1
        assert checks[0].name == "trust_policy.document"
        assert checks[0].failed
