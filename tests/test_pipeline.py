"""Tests for the diagnostic pipeline stages and the command line entry point."""

import copy
import os
from unittest.mock import Mock

import pytest
from eks_lbc_diagnostics import (
    CheckStatus,
    ClusterAccessError,
    CommandRunner,
    ConfigLoader,
    DiagnosticsConfig,
    KubectlError,
    LBCDiagnostics,
    OperatorAbortError,
    ProgressTracker,
    RunReport,
    ToolNotAvailableError,
    console_confirm_identity,
    deny_all,
    main,
)

from fakes import ACCOUNT_ID, FakeAWSClient, FakeKubeClient, FakeTooling, RecordingBackupStore


@pytest.fixture
def runner():
    runner = Mock(spec=CommandRunner)
    runner.available.return_value = True
    return runner


@pytest.fixture
def events():
    return []


def make_diagnostics(config, runner, tmp_path, events, kube=None, confirm_identity=None):
    return LBCDiagnostics(
        config,
        progress=ProgressTracker(quiet=True),
        aws=FakeAWSClient(events),
        kube=kube or FakeKubeClient(events),
        tooling=FakeTooling(events),
        runner=runner,
        backups=RecordingBackupStore(str(tmp_path / "backups"), events),
        confirm_identity=confirm_identity or (lambda cluster, region, account: True),
    )


class TestPreflight:
    def test_returns_identity_and_tools(self, config, runner, tmp_path, events):
        result = make_diagnostics(config, runner, tmp_path, events).preflight()

        assert result.account_id == ACCOUNT_ID
        assert result.node_count == 3
        assert result.tools == {"kubectl": True, "eksctl": True, "helm": True}

    def test_missing_kubectl_is_fatal(self, config, runner, tmp_path, events):
        runner.available.side_effect = lambda tool: tool != "kubectl"

        with pytest.raises(ToolNotAvailableError) as exc_info:
            make_diagnostics(config, runner, tmp_path, events).preflight()
        assert "kubectl" in str(exc_info.value)

    def test_missing_optional_tools_are_reported(self, config, runner, tmp_path, events):
        runner.available.side_effect = lambda tool: tool == "kubectl"

        result = make_diagnostics(config, runner, tmp_path, events).preflight()

        assert result.tools == {"kubectl": True, "eksctl": False, "helm": False}

    def test_unreachable_cluster_is_fatal(self, config, runner, tmp_path, events):
        kube = FakeKubeClient(events)
        kube.cluster_reachable = lambda: (False, "Unable to connect to the server: dial tcp: i/o timeout")

        with pytest.raises(ClusterAccessError) as exc_info:
            make_diagnostics(config, runner, tmp_path, events, kube=kube).preflight()
        assert "update-kubeconfig" in str(exc_info.value)

    def test_forbidden_node_listing_is_fatal(self, config, runner, tmp_path, events):
        kube = FakeKubeClient(events)
        kube.count_nodes = Mock(side_effect=KubectlError("nodes is forbidden"))

        with pytest.raises(ClusterAccessError) as exc_info:
            make_diagnostics(config, runner, tmp_path, events, kube=kube).preflight()
        assert "ACCESS DENIED" in str(exc_info.value)

    def test_declined_identity_aborts(self, runner, tmp_path, events):
        config = DiagnosticsConfig()
        confirm = Mock(return_value=False)

        with pytest.raises(OperatorAbortError):
            make_diagnostics(config, runner, tmp_path, events, confirm_identity=confirm).preflight()
        confirm.assert_called_once_with(config.cluster_name, config.region, ACCOUNT_ID)

    def test_dry_run_skips_identity_prompt(self, runner, tmp_path, events):
        confirm = Mock(return_value=False)

        make_diagnostics(DiagnosticsConfig(dry_run=True), runner, tmp_path, events, confirm_identity=confirm).preflight()

        confirm.assert_not_called()


class TestConsoleConfirmIdentity:
    def test_requires_exact_yes(self, mocker):
        mocker.patch("builtins.input", return_value="y")
        assert console_confirm_identity("c", "eu-north-1", ACCOUNT_ID) is False

    def test_yes_confirms(self, mocker):
        mocker.patch("builtins.input", return_value="yes\n")
        assert console_confirm_identity("c", "eu-north-1", ACCOUNT_ID) is True

    def test_closed_stdin_declines(self, mocker):
        mocker.patch("builtins.input", side_effect=EOFError)
        assert console_confirm_identity("c", "eu-north-1", ACCOUNT_ID) is False


class TestRun:
    def test_healthy_cluster_skips_verification(self, config, runner, tmp_path, events, healthy_facts):
        healthy_facts.snapshots = {"cluster-info.json": '{"name": "Project-Bedrock-EKSCluster"}'}
        healthy_facts.artifacts = {"lbc-pod-a.log": "started"}
        diagnostics = make_diagnostics(config, runner, tmp_path, events)
        collect = Mock(return_value=healthy_facts)
        diagnostics.collector.collect = collect

        report = diagnostics.run()

        collect.assert_called_once()
        assert report.critical_issues == 0
        assert report.fixes_applied == 0
        assert report.checklist_score == 10
        assert report.healthy is True
        # snapshots count as backups, log artifacts do not
        assert report.backups_created == 1
        assert os.path.exists(tmp_path / "backups" / "cluster-info.json")
        assert os.path.exists(tmp_path / "backups" / "lbc-pod-a.log")

    def test_verification_runs_after_fixes(self, runner, tmp_path, events, healthy_facts):
        config = DiagnosticsConfig(auto_fix=True, assume_yes=True)
        broken = copy.deepcopy(healthy_facts)
        broken.ingress_class = None
        diagnostics = make_diagnostics(config, runner, tmp_path, events)
        diagnostics.collector.collect = Mock(side_effect=[broken, healthy_facts])

        report = diagnostics.run()

        assert diagnostics.collector.collect.call_count == 2
        assert report.fixes_applied == 1
        assert report.critical_issues == 1
        assert [check for check in report.final_checks if check.status == CheckStatus.FAIL] == []
        assert report.checklist_score == 10
        assert ("mutate", "apply_manifest") in events

    def test_checklist_uses_final_checks(self, runner, tmp_path, events, healthy_facts):
        config = DiagnosticsConfig(auto_fix=True, assume_yes=True)
        broken = copy.deepcopy(healthy_facts)
        broken.ingress_class = None
        diagnostics = make_diagnostics(config, runner, tmp_path, events)
        diagnostics.collector.collect = Mock(side_effect=[broken, copy.deepcopy(broken)])

        report = diagnostics.run()

        assert report.checklist_score == 9
        assert not report.healthy

    def test_dry_run_never_verifies(self, runner, tmp_path, events, healthy_facts):
        healthy_facts.ingress_class = None
        diagnostics = make_diagnostics(DiagnosticsConfig(dry_run=True), runner, tmp_path, events)
        diagnostics.collector.collect = Mock(return_value=healthy_facts)

        report = diagnostics.run()

        diagnostics.collector.collect.assert_called_once()
        assert len(report.dry_run_notices) == 1
        assert [event for event in events if event[0] == "mutate"] == []

    def test_correct_trust_policy_is_written(self, config, runner, tmp_path, events, healthy_facts):
        healthy_facts.trust_policy.statements[0].conditions = {}
        diagnostics = make_diagnostics(config, runner, tmp_path, events)
        diagnostics.collector.collect = Mock(return_value=healthy_facts)

        report = diagnostics.run()

        assert os.path.exists(tmp_path / "backups" / "trust-policy-correct.json")
        assert report.backups_created == 0


class TestVerify:
    def test_no_fixes_returns_report_unchanged(self, config, runner, tmp_path, events):
        diagnostics = make_diagnostics(config, runner, tmp_path, events)
        diagnostics.collector.collect = Mock()
        report = RunReport()

        assert diagnostics.verify(Mock(), report) is report
        diagnostics.collector.collect.assert_not_called()


class TestMain:
    @pytest.fixture(autouse=True)
    def clean_env(self, monkeypatch):
        for name in ConfigLoader.ENV_MAPPING:
            monkeypatch.delenv(name, raising=False)

    @pytest.fixture
    def diagnostics_cls(self, mocker):
        return mocker.patch("eks_lbc_diagnostics.LBCDiagnostics")

    def test_completed_run_exits_zero(self, diagnostics_cls, tmp_path):
        with pytest.raises(SystemExit) as exc_info:
            main(["--dry-run", "--output-dir", str(tmp_path)])

        assert exc_info.value.code == 0
        diagnostics_cls.return_value.run.assert_called_once()
        assert any(name.startswith("lbc-diagnostics-") for name in os.listdir(tmp_path))

    def test_fatal_error_exits_one(self, diagnostics_cls, tmp_path):
        diagnostics_cls.return_value.run.side_effect = ClusterAccessError("kubectl cannot connect")

        with pytest.raises(SystemExit) as exc_info:
            main(["--dry-run", "--output-dir", str(tmp_path)])

        assert exc_info.value.code == 1

    def test_interrupt_exits_130(self, diagnostics_cls, tmp_path):
        diagnostics_cls.return_value.run.side_effect = KeyboardInterrupt

        with pytest.raises(SystemExit) as exc_info:
            main(["--output-dir", str(tmp_path)])

        assert exc_info.value.code == 130

    def test_missing_config_file_exits_one(self, diagnostics_cls, tmp_path):
        with pytest.raises(SystemExit) as exc_info:
            main(["--config", str(tmp_path / "absent.yaml"), "--output-dir", str(tmp_path)])

        assert exc_info.value.code == 1
        diagnostics_cls.assert_not_called()

    def test_unsafe_argument_exits_one(self, diagnostics_cls, tmp_path):
        with pytest.raises(SystemExit) as exc_info:
            main(["--cluster-name", "prod; reboot", "--output-dir", str(tmp_path)])

        assert exc_info.value.code == 1
        diagnostics_cls.assert_not_called()

    def test_interactive_without_tty_denies_fixes(self, diagnostics_cls, mocker, tmp_path):
        mocker.patch("sys.stdin").isatty.return_value = False

        with pytest.raises(SystemExit):
            main(["--output-dir", str(tmp_path)])

        assert diagnostics_cls.call_args.kwargs["confirm"] is deny_all

    def test_env_dry_run(self, diagnostics_cls, monkeypatch, tmp_path):
        monkeypatch.setenv("DRY_RUN", "yes")

        with pytest.raises(SystemExit):
            main(["--output-dir", str(tmp_path)])

        config = diagnostics_cls.call_args.args[0]
        assert config.dry_run is True
