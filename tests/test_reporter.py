"""Tests for checklist scoring, verdict and the summary output."""

import pytest
from eks_lbc_diagnostics import (
    CHECKLIST,
    Check,
    CheckStatus,
    DiagnosticsConfig,
    ProgressTracker,
    RemediationMode,
    Reporter,
    RuleEvaluator,
    RunReport,
    TrustPolicyDocument,
    build_trust_policy,
    section_title,
)

from fakes import OIDC_PROVIDER_ID, SUBJECT


@pytest.fixture
def reporter():
    return Reporter(DiagnosticsConfig(), ProgressTracker(quiet=True))


def report_for(facts, reporter, mode=RemediationMode.INTERACTIVE):
    report = RunReport(mode=mode, log_path="/tmp/lbc.log", backup_dir="/tmp/lbc-backup")
    report.record_checks(RuleEvaluator(DiagnosticsConfig()).evaluate(facts))
    return reporter.finalize(report)


class TestChecklist:
    def test_healthy_cluster_scores_full(self, reporter, healthy_facts):
        report = report_for(healthy_facts, reporter)
        assert report.checklist_score == len(CHECKLIST) == 10
        assert report.critical_issues == 0
        assert report.healthy is True

    def test_principal_mismatch_scenario(self, reporter, healthy_facts):
        stale = "arn:aws:iam::123456789012:oidc-provider/oidc.eks.eu-north-1.amazonaws.com/id/STALE"
        healthy_facts.trust_policy = TrustPolicyDocument.parse(build_trust_policy(stale, OIDC_PROVIDER_ID, SUBJECT))

        report = report_for(healthy_facts, reporter)

        assert report.critical_issues == 1
        failing = [check for check in report.final_checks if check.failed]
        assert [check.name for check in failing] == ["trust_policy.principal"]
        assert report.checklist_score == 9
        assert [item.label for item in report.checklist if not item.passed] == ["Trust Policy correctly configured"]
        assert report.healthy is False

    def test_missing_check_counts_as_failed_item(self):
        results = Reporter.build_checklist([Check("iam.role", CheckStatus.PASS, "ok")])
        assert [item.passed for item in results][:2] == [False, True]

    def test_any_semantics_for_pods_and_subnets(self):
        checks = [
            Check("pod.phase", CheckStatus.FAIL, "pending", resource="a"),
            Check("pod.phase", CheckStatus.PASS, "running", resource="b"),
            Check("subnet.elb_tag", CheckStatus.FAIL, "untagged", resource="s1"),
        ]
        results = {item.label: item.passed for item in Reporter.build_checklist(checks)}
        assert results["Controller pods running"] is True
        assert results["Subnets tagged for ELB"] is False

    def test_healthy_needs_zero_critical(self):
        report = RunReport(critical_issues=1)
        report.checklist = Reporter.build_checklist([])
        assert report.healthy is False

    def test_eight_of_ten_is_healthy_without_critical(self):
        report = RunReport(critical_issues=0)
        report.checklist = Reporter.build_checklist([])
        for item in report.checklist[:8]:
            item.passed = True
        assert report.checklist_score == 8
        assert report.healthy is True


class TestRender:
    def test_summary_output(self, reporter, healthy_facts, capsys):
        healthy_facts.service_account.role_arn_annotation = None
        report = report_for(healthy_facts, reporter)

        reporter.render(report)

        output = capsys.readouterr().out
        assert "Critical Issues: 1" in output
        assert "Score: 9/10" in output
        assert "[✗] ServiceAccount annotation correct" in output
        assert "Log file: /tmp/lbc.log" in output
        assert "kubectl get ingress -A --watch" in output
        assert "✗ Configuration has issues that need attention" in output

    def test_trust_highlight(self, reporter, healthy_facts, capsys):
        healthy_facts.trust_policy = TrustPolicyDocument.parse({"Statement": []})
        reporter.render(report_for(healthy_facts, reporter))
        assert "Trust Policy is misconfigured" in capsys.readouterr().out

    def test_dry_run_note(self, reporter, healthy_facts, capsys):
        report = report_for(healthy_facts, reporter, mode=RemediationMode.DRY_RUN)
        report.dry_run_notices = ["aws ec2 create-tags ..."]
        reporter.render(report)
        output = capsys.readouterr().out
        assert "This was a DRY RUN" in output
        assert "1 change(s) would be applied" in output

    def test_healthy_verdict(self, reporter, healthy_facts, capsys):
        reporter.render(report_for(healthy_facts, reporter))
        assert "✓ Configuration looks good!" in capsys.readouterr().out

    def test_next_steps_use_namespace_and_region(self):
        reporter = Reporter(DiagnosticsConfig(namespace="ingress", region="eu-west-1"), ProgressTracker(quiet=True))
        commands = [command for _, command in reporter.next_steps()]
        assert "kubectl rollout restart deployment -n ingress aws-load-balancer-controller" in commands
        assert any("--region eu-west-1" in command for command in commands)


class TestSectionTitles:
    @pytest.mark.parametrize(
        "name,title",
        [
            ("iam.policy_attached", "IAM PERMISSIONS POLICY"),
            ("iam.role", "IAM ROLE FOR LOAD BALANCER CONTROLLER"),
            ("controller.pods", "CONTROLLER PODS"),
            ("controller.version", "CONTROLLER DEPLOYMENT"),
            ("ingress_class.exists", "INGRESS CLASS"),
            ("ingress.hostname", "INGRESS RESOURCES"),
        ],
    )
    def test_section_for_check(self, name, title):
        assert section_title(name) == title
