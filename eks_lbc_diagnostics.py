#!/usr/bin/env python3
"""
EKS Load Balancer Controller Diagnostics v1.0.0

A single-pass diagnostic and remediation tool for the ingress stack of an Amazon
EKS cluster. It checks OIDC trust, IAM role and policy wiring, the ServiceAccount
annotation, subnet tagging, and AWS Load Balancer Controller health.

================================================================================
FEATURES
================================================================================

🔍 Fact Collection
   • Cluster: status, version, VPC, subnets, OIDC issuer
   • IAM: OIDC provider registration, role, trust policy, permissions policy
   • Kubernetes: namespace, ServiceAccount, controller deployment and pods
   • Networking: subnet ELB tags, IngressClass, Ingress load balancer hostnames

✅ Rule Evaluation
   • Structured trust policy parsing (principal, action, aud/sub conditions)
   • Controller version gate for Kubernetes 1.29+
   • Controller log scanning for IAM and web identity failures

🔧 Remediation
   • dry-run, auto-fix or interactive (default-deny) modes
   • Backup of the current value before every change
   • Verification pass after fixes are applied

================================================================================
USAGE
================================================================================

Dry run against the default cluster:
    DRY_RUN=yes python eks_lbc_diagnostics.py

Interactive run with explicit names:
    python eks_lbc_diagnostics.py \\
        --cluster-name my-cluster \\
        --region eu-west-1 \\
        --role-name my-lbc-role \\
        --policy-name my-lbc-policy

Apply every available fix without prompting:
    AUTO_FIX=yes python eks_lbc_diagnostics.py --yes

================================================================================
ENVIRONMENT VARIABLES
================================================================================

    DRY_RUN                    yes/no, only report what would be changed
    AUTO_FIX                   yes/no, apply fixes without prompting
    LBC_DIAG_PROFILE           AWS profile
    LBC_DIAG_REGION            AWS region
    LBC_DIAG_CLUSTER           EKS cluster name
    LBC_DIAG_ROLE_NAME         IAM role assumed by the controller
    LBC_DIAG_POLICY_NAME       IAM permissions policy name
    LBC_DIAG_NAMESPACE         Controller namespace
    LBC_DIAG_SERVICE_ACCOUNT   Controller ServiceAccount
    LBC_DIAG_KUBE_CONTEXT      kubectl context
    LBC_DIAG_OUTPUT_DIR        Directory for the run log and backups
    LBC_DIAG_TIMEZONE          Timezone for displayed timestamps

================================================================================
EXIT CODES
================================================================================

    0   - Diagnostic pass completed (regardless of findings)
    1   - Fatal preflight, authentication, connectivity or input error
    130 - Interrupted by user (Ctrl+C)

================================================================================
IAM PERMISSIONS REQUIRED
================================================================================

Read:
    sts:GetCallerIdentity, eks:DescribeCluster
    iam:GetOpenIDConnectProvider, iam:ListOpenIDConnectProviders
    iam:GetRole, iam:ListRoles, iam:ListAttachedRolePolicies
    iam:ListPolicies, ec2:DescribeSubnets

Remediation:
    iam:UpdateAssumeRolePolicy, iam:CreatePolicy, iam:AttachRolePolicy
    iam:CreateOpenIDConnectProvider (via eksctl), ec2:CreateTags

================================================================================
REFERENCES
================================================================================

    • AWS Load Balancer Controller: https://docs.aws.amazon.com/eks/latest/userguide/aws-load-balancer-controller.html
    • IRSA: https://docs.aws.amazon.com/eks/latest/userguide/iam-roles-for-service-accounts.html
    • OIDC provider: https://docs.aws.amazon.com/eks/latest/userguide/enable-iam-roles-for-service-accounts.html
    • Subnet tagging: https://repost.aws/knowledge-center/eks-vpc-subnet-discovery

================================================================================
"""

# === SECTION 1: IMPORTS & CONSTANTS ===

import argparse
import fnmatch
import json
import logging
import os
import re
import shutil
import subprocess
import sys
import tempfile
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from typing import Any, Callable, Optional
from urllib.parse import unquote

import boto3
import botocore.exceptions
import pytz
import requests
import yaml
from dateutil import parser as date_parser

# Configure module-level logger
logger = logging.getLogger(__name__)

logger.setLevel(logging.INFO)

VERSION = "1.0.0"

DEFAULT_CLUSTER_NAME = "Project-Bedrock-EKSCluster"
# Observed naming from the original deployment: the role carries a policy-style name.
DEFAULT_ROLE_NAME = "ProjectBedrock-LBC-Policy"
DEFAULT_POLICY_NAME = "lbc-policy"
DEFAULT_SERVICE_ACCOUNT = "aws-load-balancer-controller"
DEFAULT_NAMESPACE = "kube-system"
DEFAULT_REGION = "eu-north-1"

DEFAULT_TIMEOUT = 30
INSTALL_TIMEOUT = 300
POLICY_DOWNLOAD_TIMEOUT = 30
POD_LOG_TAIL_LINES = 100
POD_LOG_ARTIFACT_LINES = 500
MAX_LOG_SAMPLES = 5
MAX_RECENT_EVENTS = 10
CHECKLIST_HEALTHY_MIN = 8

REQUIRED_TOOLS = ("kubectl",)
OPTIONAL_TOOLS = ("eksctl", "helm")

CONTROLLER_NAME = "aws-load-balancer-controller"
CONTROLLER_SELECTOR = "app.kubernetes.io/name=aws-load-balancer-controller"
CONTROLLER_MIN_VERSION = (2, 7, 0)
CONTROLLER_VERSION_GATE_MINOR = 29

INGRESS_CLASS_NAME = "alb"
INGRESS_CLASS_CONTROLLER = "ingress.k8s.aws/alb"
INGRESS_CLASS_ANNOTATION = "kubernetes.io/ingress.class"

ROLE_ARN_ANNOTATION = "eks.amazonaws.com/role-arn"
WEB_IDENTITY_ACTION = "sts:AssumeRoleWithWebIdentity"
STS_AUDIENCE = "sts.amazonaws.com"
POLICY_VERSION = "2012-10-17"

ELB_ROLE_TAG = "kubernetes.io/role/elb"
INTERNAL_ELB_ROLE_TAG = "kubernetes.io/role/internal-elb"
CLUSTER_TAG_PREFIX = "kubernetes.io/cluster/"

CANDIDATE_KEYWORDS = ("balancer", "lbc")

LBC_IAM_POLICY_URL = (
    "https://raw.githubusercontent.com/kubernetes-sigs/aws-load-balancer-controller/main/docs/install/iam_policy.json"
)
HELM_REPO_NAME = "eks"
HELM_REPO_URL = "https://aws.github.io/eks-charts"
LBC_INSTALL_DOC = "https://kubernetes-sigs.github.io/aws-load-balancer-controller/latest/deploy/installation/"

CONTROLLER_LOG_PATTERNS = [
    {
        "pattern": r"AccessDenied|UnauthorizedAccess",
        "issue": "Found 'AccessDenied' errors in logs",
        "severity": "fail",
    },
    {
        "pattern": r"AssumeRoleWithWebIdentity",
        "issue": "Found 'AssumeRoleWithWebIdentity' errors",
        "severity": "fail",
    },
    {
        "pattern": r"InvalidClientTokenId|WebIdentityErr",
        "issue": "Found authentication errors - OIDC/IAM mismatch",
        "severity": "fail",
    },
]


class CheckStatus:
    """Outcome of a single rule."""

    PASS = "pass"
    WARN = "warn"
    FAIL = "fail"

    @classmethod
    def get_marker(cls, status: str) -> str:
        markers = {
            cls.PASS: "✓ PASS:",
            cls.WARN: "⚠️  WARN:",
            cls.FAIL: "✗ FAIL:",
        }
        return markers.get(status, "•")


class RiskTier:
    """Declared risk of a remediation, shown when asking for confirmation."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @classmethod
    def get_label(cls, tier: str) -> str:
        labels = {
            cls.HIGH: "⚠️  HIGH RISK ⚠️",
            cls.MEDIUM: "⚠️  MEDIUM RISK",
            cls.LOW: "✓ LOW RISK",
        }
        return labels.get(tier, "UNKNOWN RISK")


class RemediationMode:
    """How failing checks with a known fix are handled."""

    DRY_RUN = "dry_run"
    AUTO_FIX = "auto_fix"
    INTERACTIVE = "interactive"

    @classmethod
    def get_label(cls, mode: str) -> str:
        labels = {
            cls.DRY_RUN: "DRY RUN MODE: No changes will be made",
            cls.AUTO_FIX: "AUTO-FIX MODE: Changes will be applied automatically (DANGEROUS!)",
            cls.INTERACTIVE: "INTERACTIVE MODE: Each change asks for confirmation",
        }
        return labels.get(mode, "Unknown mode")


# === SECTION 2: EXCEPTION CLASSES ===


class DiagnosticsError(Exception):
    """Base exception for LBC diagnostics"""

    pass


class ToolNotAvailableError(DiagnosticsError):
    """Required CLI tool not available in PATH"""

    pass


class AWSAuthenticationError(DiagnosticsError):
    """AWS authentication failed"""

    pass


class ClusterAccessError(DiagnosticsError):
    """Cluster unreachable, not describable, or access denied"""

    pass


class InputValidationError(DiagnosticsError):
    """Invalid or unsafe input parameter"""

    pass


class ConfigurationError(DiagnosticsError):
    """Invalid configuration file or value"""

    pass


class OperatorAbortError(DiagnosticsError):
    """Operator declined the target cluster confirmation"""

    pass


class TrustPolicyParseError(DiagnosticsError):
    """Trust policy document could not be parsed"""

    pass


class PolicyDownloadError(DiagnosticsError):
    """Upstream IAM policy document could not be fetched"""

    pass


class AWSAPIError(DiagnosticsError):
    """AWS API call failed"""

    def __init__(self, message: str, code: str = ""):
        super().__init__(message)
        self.code = code


class CommandError(DiagnosticsError):
    """External command (kubectl, eksctl, helm) failed"""

    def __init__(self, message: str, command: Optional[list] = None):
        super().__init__(message)
        self.command = command or []


class KubectlError(CommandError):
    """kubectl command failed"""

    pass


# === SECTION 3: UTILITY CLASSES ===


class ProgressTracker:
    """Console and log output for a diagnostic run."""

    def __init__(self, verbose=False, quiet=False, log_level=None):
        self.verbose = verbose
        self.quiet = quiet
        self.checks_run = 0
        self.log_level = log_level
        self._configure_logging()

    def _configure_logging(self):
        """Configure logging based on settings."""
        if self.log_level:
            logger.setLevel(self.log_level)
        elif self.verbose:
            logger.setLevel(logging.DEBUG)
        else:
            logger.setLevel(logging.INFO)

    def attach_log_file(self, path: str) -> logging.Handler:
        """Mirror everything the tracker reports into a run log file."""
        handler = logging.FileHandler(path, encoding="utf-8")
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter("%(asctime)s - %(levelname)s - %(message)s"))
        logger.addHandler(handler)
        return handler

    def detach_log_file(self, handler: logging.Handler) -> None:
        logger.removeHandler(handler)
        handler.close()

    def section(self, title):
        logger.info(f"=== {title} ===")

        if not self.quiet:
            print()
            print("=" * 70)
            print(title)
            print("=" * 70)

    def step(self, message):
        """Announce the check that is about to run."""
        self.checks_run += 1
        logger.info(f"[CHECK] {message}")

        if not self.quiet:
            print(f"\n[CHECK] {message}")

    def info(self, message):
        """Show info message."""
        logger.info(message)

        if self.verbose and not self.quiet:
            print(f"ℹ️  {message}")

    def warning(self, message):
        """Show warning message."""
        logger.warning(message)

        if not self.quiet:
            print(f"⚠️  {message}")

    def error(self, message):
        """Show error message."""
        logger.error(message)

        # Also print to stderr for visibility
        print(f"✗ {message}", file=sys.stderr)

    def result(self, check):
        """Show the outcome of a single check with its evidence."""
        lines = [f"  {CheckStatus.get_marker(check.status)} {check.message}"]
        if check.status != CheckStatus.PASS:
            if check.expected is not None:
                lines.append(f"      Expected: {check.expected}")
            if check.observed is not None:
                lines.append(f"      Found:    {check.observed}")
            for detail in check.details:
                lines.append(f"      {detail}")
            if check.suggestion:
                lines.append(f"      → {check.suggestion}")

        if check.status == CheckStatus.FAIL:
            level = logging.ERROR
        elif check.status == CheckStatus.WARN:
            level = logging.WARNING
        else:
            level = logging.INFO
        for line in lines:
            logger.log(level, line.strip())

        if not self.quiet:
            print("\n".join(lines))

    def fix(self, message):
        logger.info(f"FIX: {message}")
        if not self.quiet:
            print(f"  🔧 FIX: {message}")

    def backup(self, message):
        logger.info(f"BACKUP: {message}")
        if not self.quiet:
            print(f"  💾 BACKUP: {message}")

    def dry_run(self, command):
        logger.info(f"[DRY-RUN] Would execute: {command}")
        if not self.quiet:
            print(f"  [DRY-RUN] Would execute: {command}")

    def emit(self, line=""):
        """Report output, shown even in quiet mode."""
        logger.info(line)
        print(line)


INPUT_VALIDATION_PATTERNS = {
    "profile": re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9._-]*$"),
    "region": re.compile(r"^[a-z]{2}-[a-z]+-\d+$"),
    "cluster_name": re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9._-]*$"),
    "namespace": re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$"),
    "service_account": re.compile(r"^[a-z0-9]([-a-z0-9.]*[a-z0-9])?$"),
    "role_name": re.compile(r"^[a-zA-Z0-9+=,.@_-]{1,64}$"),
    "policy_name": re.compile(r"^[a-zA-Z0-9+=,.@_-]{1,128}$"),
    "kube_context": re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9._:/@-]*$"),
}


def validate_input(name: str, value: str) -> str:
    """Validate input parameter against safe pattern to prevent command injection.

    Args:
        name: Parameter name (profile, region, cluster_name, namespace,
            service_account, role_name, policy_name, kube_context)
        value: Parameter value to validate

    Returns:
        The validated value (unchanged if valid)

    Raises:
        InputValidationError: If the value contains unsafe characters
    """
    if not value:
        return value

    if name not in INPUT_VALIDATION_PATTERNS:
        raise InputValidationError(f"Unknown parameter: {name}")

    pattern = INPUT_VALIDATION_PATTERNS[name]
    if not pattern.match(value):
        raise InputValidationError(
            f"Invalid {name}: '{value}'. Contains characters that may be unsafe for shell commands."
        )

    return value


def parse_bool(value) -> bool:
    """Interpret yes/no style flags from env vars and config files."""
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in ("yes", "y", "true", "1", "on")


class ConfigLoader:
    """Load configuration from YAML/JSON files with environment variable support."""

    ENV_MAPPING = {
        "DRY_RUN": "dry_run",
        "AUTO_FIX": "auto_fix",
        "LBC_DIAG_PROFILE": "profile",
        "LBC_DIAG_REGION": "region",
        "LBC_DIAG_CLUSTER": "cluster_name",
        "LBC_DIAG_ROLE_NAME": "role_name",
        "LBC_DIAG_POLICY_NAME": "policy_name",
        "LBC_DIAG_NAMESPACE": "namespace",
        "LBC_DIAG_SERVICE_ACCOUNT": "service_account",
        "LBC_DIAG_KUBE_CONTEXT": "kube_context",
        "LBC_DIAG_OUTPUT_DIR": "output_dir",
        "LBC_DIAG_TIMEZONE": "timezone",
        "LBC_DIAG_VERBOSE": "verbose",
        "LBC_DIAG_QUIET": "quiet",
    }
    BOOLEAN_KEYS = ("dry_run", "auto_fix", "verbose", "quiet", "assume_yes")

    @staticmethod
    def load(config_path: Optional[str] = None) -> dict:
        config = {}
        if config_path:
            if not os.path.exists(config_path):
                raise ConfigurationError(f"Config file not found: {config_path}")
            with open(config_path, "r") as f:
                content = f.read()
            try:
                if config_path.endswith((".yaml", ".yml")):
                    config = yaml.safe_load(content) or {}
                elif config_path.endswith(".json"):
                    config = json.loads(content)
                else:
                    raise ConfigurationError(f"Unsupported config file type: {config_path} (use .yaml, .yml or .json)")
            except (yaml.YAMLError, json.JSONDecodeError) as e:
                raise ConfigurationError(f"Invalid config file {config_path}: {e}")
            if not isinstance(config, dict):
                raise ConfigurationError(f"Config file {config_path} must contain a mapping")
        config.update(ConfigLoader._load_from_env())
        return config

    @staticmethod
    def _load_from_env() -> dict:
        config = {}
        for env_var, config_key in ConfigLoader.ENV_MAPPING.items():
            value = os.environ.get(env_var)
            if value:
                if config_key in ConfigLoader.BOOLEAN_KEYS:
                    config[config_key] = parse_bool(value)
                else:
                    config[config_key] = value
        return config


@dataclass
class DiagnosticsConfig:
    """Resolved settings for one diagnostic run."""

    cluster_name: str = DEFAULT_CLUSTER_NAME
    region: str = DEFAULT_REGION
    role_name: str = DEFAULT_ROLE_NAME
    policy_name: str = DEFAULT_POLICY_NAME
    namespace: str = DEFAULT_NAMESPACE
    service_account: str = DEFAULT_SERVICE_ACCOUNT
    profile: Optional[str] = None
    kube_context: Optional[str] = None
    dry_run: bool = False
    auto_fix: bool = False
    assume_yes: bool = False
    output_dir: Optional[str] = None
    timezone: str = "UTC"
    verbose: bool = False
    quiet: bool = False

    def __post_init__(self):
        validate_input("cluster_name", self.cluster_name)
        validate_input("region", self.region)
        validate_input("role_name", self.role_name)
        validate_input("policy_name", self.policy_name)
        validate_input("namespace", self.namespace)
        validate_input("service_account", self.service_account)
        validate_input("profile", self.profile)
        validate_input("kube_context", self.kube_context)
        try:
            pytz.timezone(self.timezone)
        except pytz.UnknownTimeZoneError:
            raise ConfigurationError(f"Unknown timezone: {self.timezone}")

    @classmethod
    def from_sources(cls, loaded: dict, overrides: Optional[dict] = None) -> "DiagnosticsConfig":
        """Merge file/env settings with CLI overrides. CLI values win when set."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(loaded) - known)
        if unknown:
            logger.warning(f"Ignoring unknown config keys: {', '.join(unknown)}")

        merged = {key: value for key, value in loaded.items() if key in known}
        for key, value in (overrides or {}).items():
            if value is not None and key in known:
                merged[key] = value
        for key in ConfigLoader.BOOLEAN_KEYS:
            if key in merged:
                merged[key] = parse_bool(merged[key])
        return cls(**merged)

    @property
    def remediation_mode(self) -> str:
        if self.dry_run:
            return RemediationMode.DRY_RUN
        if self.auto_fix:
            return RemediationMode.AUTO_FIX
        return RemediationMode.INTERACTIVE

    @property
    def expected_subject(self) -> str:
        return f"system:serviceaccount:{self.namespace}:{self.service_account}"

    @property
    def cluster_tag_key(self) -> str:
        return f"{CLUSTER_TAG_PREFIX}{self.cluster_name}"


class BackupStore:
    """Timestamped directory holding pre-change snapshots and run artifacts."""

    def __init__(self, directory: str):
        self.directory = directory
        os.makedirs(directory, mode=0o700, exist_ok=True)

    def save(self, filename: str, content: Any) -> str:
        """Write content to the backup directory with owner-only permissions.

        Non-string content is serialized as indented JSON.

        Returns:
            Path of the written file
        """
        safe_name = re.sub(r"[^A-Za-z0-9._-]", "_", filename)
        path = os.path.join(self.directory, safe_name)
        if not isinstance(content, str):
            content = json.dumps(content, indent=2, default=str)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w") as f:
            f.write(content)
            if not content.endswith("\n"):
                f.write("\n")
        return path


def run_timestamp() -> str:
    return datetime.now().strftime("%Y%m%d-%H%M%S")


def format_timestamp(value, tz_name: str = "UTC") -> str:
    """Render a datetime (or ISO string) in the configured timezone."""
    if value is None:
        return "unknown"
    if isinstance(value, str):
        try:
            value = date_parser.parse(value)
        except (ValueError, OverflowError):
            return value
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(pytz.timezone(tz_name)).strftime("%Y-%m-%d %H:%M:%S %Z")


def parse_controller_version(image: Optional[str]) -> Optional[tuple]:
    """Extract (major, minor, patch) from a controller image tag like ...:v2.8.1"""
    if not image or ":" not in image.rsplit("/", 1)[-1]:
        return None
    tag = image.rsplit(":", 1)[-1]
    match = re.search(r"v?(\d+)\.(\d+)\.(\d+)", tag)
    if not match:
        return None
    return tuple(int(part) for part in match.groups())


def format_version(version: Optional[tuple]) -> str:
    if not version:
        return "unknown"
    return "v" + ".".join(str(part) for part in version)


def scan_controller_logs(log_text: str) -> list[dict]:
    """Match controller log lines against known IAM authentication failure patterns.

    Returns:
        One entry per matched pattern with issue, severity and up to
        MAX_LOG_SAMPLES sample lines.
    """
    if not log_text:
        return []

    lines = log_text.splitlines()
    matches = []
    for entry in CONTROLLER_LOG_PATTERNS:
        pattern = re.compile(entry["pattern"], re.IGNORECASE)
        samples = [line.strip() for line in lines if pattern.search(line)]
        if samples:
            matches.append(
                {
                    "issue": entry["issue"],
                    "severity": entry["severity"],
                    "samples": samples[:MAX_LOG_SAMPLES],
                }
            )
    return matches


def count_error_lines(log_text: str) -> list[str]:
    return [line.strip() for line in (log_text or "").splitlines() if re.search(r"error", line, re.IGNORECASE)]


# === SECTION 4: DATA MODEL ===


@dataclass
class Remediation:
    """A fix attached to a failing check."""

    action: str
    description: str
    risk: str
    command: str
    resource: Optional[str] = None
    params: dict = field(default_factory=dict)

    @property
    def backup_filename(self) -> str:
        suffix = f"-{self.resource}" if self.resource else ""
        return f"pre-{self.action}{suffix}.json"


@dataclass
class Check:
    """Result of evaluating one rule against the collected facts."""

    name: str
    status: str
    message: str
    observed: Optional[str] = None
    expected: Optional[str] = None
    resource: Optional[str] = None
    remediation: Optional[Remediation] = None
    suggestion: Optional[str] = None
    details: list[str] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return self.status == CheckStatus.PASS

    @property
    def failed(self) -> bool:
        return self.status == CheckStatus.FAIL

    @property
    def fixable(self) -> bool:
        return self.failed and self.remediation is not None


def _as_list(value) -> list:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(item) for item in value]
    return [str(value)]


@dataclass
class TrustPolicyStatement:
    effect: str = ""
    principal: dict = field(default_factory=dict)
    actions: list[str] = field(default_factory=list)
    conditions: dict = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: dict) -> "TrustPolicyStatement":
        if not isinstance(raw, dict):
            raise TrustPolicyParseError(f"Statement must be an object, got {type(raw).__name__}")

        principal = raw.get("Principal") or {}
        if isinstance(principal, str):
            principal = {"AWS": principal}
        conditions = {}
        for operator, block in (raw.get("Condition") or {}).items():
            if not isinstance(block, dict):
                raise TrustPolicyParseError(f"Condition operator {operator} must map keys to values")
            conditions[operator] = {key: _as_list(value) for key, value in block.items()}

        return cls(
            effect=raw.get("Effect", ""),
            principal={kind: _as_list(value) for kind, value in principal.items()},
            actions=_as_list(raw.get("Action")),
            conditions=conditions,
        )

    @property
    def federated(self) -> list[str]:
        return self.principal.get("Federated", [])

    def condition_values(self, key: str) -> list[str]:
        values = []
        for block in self.conditions.values():
            values.extend(block.get(key, []))
        return values

    def condition_matches(self, key: str, expected: str) -> Optional[bool]:
        """True if any condition on key admits expected, None if the key is absent.

        StringLike values are treated as wildcard patterns.
        """
        present = False
        for operator, block in self.conditions.items():
            if key not in block:
                continue
            present = True
            for value in block[key]:
                if operator.startswith("StringLike"):
                    if fnmatch.fnmatchcase(expected, value):
                        return True
                elif value == expected:
                    return True
        return False if present else None


@dataclass
class TrustPolicyDocument:
    """Typed view of an IAM role trust (assume-role) policy."""

    version: str = POLICY_VERSION
    statements: list = field(default_factory=list)

    @classmethod
    def parse(cls, document) -> "TrustPolicyDocument":
        """Build a document from a dict, JSON text, or URL-encoded JSON text.

        Raises:
            TrustPolicyParseError: If the document is not valid policy JSON
        """
        if isinstance(document, str):
            text = document.strip()
            if text.startswith("%7B") or text.startswith("%7b"):
                text = unquote(text)
            try:
                document = json.loads(text)
            except json.JSONDecodeError as e:
                raise TrustPolicyParseError(f"Trust policy is not valid JSON: {e}")
        if not isinstance(document, dict):
            raise TrustPolicyParseError("Trust policy must be a JSON object")

        raw_statements = document.get("Statement", [])
        if isinstance(raw_statements, dict):
            raw_statements = [raw_statements]
        return cls(
            version=document.get("Version", ""),
            statements=[TrustPolicyStatement.from_dict(item) for item in raw_statements],
        )

    def web_identity_statement(self) -> Optional[TrustPolicyStatement]:
        """The statement that grants federated access, falling back to the first one."""
        for statement in self.statements:
            if statement.effect == "Allow" and statement.federated:
                return statement
        return self.statements[0] if self.statements else None


def build_trust_policy(oidc_provider_arn: str, oidc_provider_id: str, subject: str) -> dict:
    """Canonical trust policy letting one ServiceAccount assume the role via IRSA."""
    return {
        "Version": POLICY_VERSION,
        "Statement": [
            {
                "Effect": "Allow",
                "Principal": {"Federated": oidc_provider_arn},
                "Action": WEB_IDENTITY_ACTION,
                "Condition": {
                    "StringEquals": {
                        f"{oidc_provider_id}:aud": STS_AUDIENCE,
                        f"{oidc_provider_id}:sub": subject,
                    }
                },
            }
        ],
    }


def service_account_manifest(name: str, namespace: str, role_arn: str) -> dict:
    return {
        "apiVersion": "v1",
        "kind": "ServiceAccount",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "annotations": {ROLE_ARN_ANNOTATION: role_arn},
        },
    }


def ingress_class_manifest() -> dict:
    return {
        "apiVersion": "networking.k8s.io/v1",
        "kind": "IngressClass",
        "metadata": {"name": INGRESS_CLASS_NAME},
        "spec": {"controller": INGRESS_CLASS_CONTROLLER},
    }


@dataclass
class OIDCProviderFacts:
    arn: str
    registered: bool = False
    client_ids: list[str] = field(default_factory=list)
    thumbprints: list[str] = field(default_factory=list)


@dataclass
class ServiceAccountFacts:
    name: str
    namespace: str
    exists: bool = False
    role_arn_annotation: Optional[str] = None


@dataclass
class SubnetFacts:
    subnet_id: str
    tags: dict = field(default_factory=dict)


@dataclass
class DeploymentFacts:
    name: str
    namespace: str
    desired_replicas: int = 1
    ready_replicas: int = 0
    image: str = ""
    service_account: str = "default"


@dataclass
class PodFacts:
    name: str
    phase: str = "Unknown"
    ready: bool = False
    restart_count: int = 0
    logs: str = ""
    logs_error: Optional[str] = None
    web_identity_token_file: Optional[str] = None
    role_arn_env: Optional[str] = None
    events: list[str] = field(default_factory=list)


@dataclass
class IngressClassFacts:
    name: str
    controller: str = ""


@dataclass
class IngressFacts:
    namespace: str
    name: str
    ingress_class: Optional[str] = None
    hostname: Optional[str] = None
    events: list[str] = field(default_factory=list)


@dataclass
class ClusterFacts:
    """Everything the collector learned about the cluster, IAM and networking.

    Facts that could not be queried are listed in ``unavailable`` with the
    raw error text instead of being guessed.
    """

    cluster_name: str
    region: str
    account_id: Optional[str] = None
    caller_arn: Optional[str] = None
    node_count: int = 0
    tools: dict = field(default_factory=dict)

    cluster_status: Optional[str] = None
    cluster_version: Optional[str] = None
    cluster_endpoint: Optional[str] = None
    vpc_id: Optional[str] = None
    subnet_ids: list[str] = field(default_factory=list)

    oidc_issuer: Optional[str] = None
    oidc_provider: Optional[OIDCProviderFacts] = None

    role_arn: Optional[str] = None
    role_created: Optional[Any] = None
    role_candidates: list[str] = field(default_factory=list)
    trust_policy: Optional[TrustPolicyDocument] = None
    attached_policies: list[dict] = field(default_factory=list)

    policy_arn: Optional[str] = None
    policy_version: Optional[str] = None
    policy_candidates: list[str] = field(default_factory=list)

    namespace_exists: Optional[bool] = None
    service_account: Optional[ServiceAccountFacts] = None
    subnets: list[SubnetFacts] = field(default_factory=list)
    deployment: Optional[DeploymentFacts] = None
    pods: list[PodFacts] = field(default_factory=list)
    ingress_class: Optional[IngressClassFacts] = None
    ingresses: list[IngressFacts] = field(default_factory=list)

    unavailable: dict = field(default_factory=dict)
    snapshots: dict = field(default_factory=dict)
    artifacts: dict = field(default_factory=dict)

    @property
    def oidc_provider_id(self) -> Optional[str]:
        if not self.oidc_issuer:
            return None
        return self.oidc_issuer.replace("https://", "", 1)

    @property
    def oidc_provider_arn(self) -> Optional[str]:
        if not self.oidc_provider_id or not self.account_id:
            return None
        return f"arn:aws:iam::{self.account_id}:oidc-provider/{self.oidc_provider_id}"

    @property
    def cluster_minor_version(self) -> Optional[int]:
        if not self.cluster_version:
            return None
        match = re.match(r"^\d+\.(\d+)", self.cluster_version)
        return int(match.group(1)) if match else None


@dataclass
class PreflightResult:
    account_id: str
    caller_arn: str
    tools: dict
    node_count: int = 0


@dataclass
class ChecklistItem:
    label: str
    check_names: tuple
    match_any: bool = False

    def evaluate(self, checks: list) -> bool:
        matching = [check for check in checks if check.name in self.check_names]
        if self.match_any:
            return any(check.passed for check in matching)
        for name in self.check_names:
            named = [check for check in matching if check.name == name]
            if not named or not all(check.passed for check in named):
                return False
        return True


@dataclass
class ChecklistResult:
    index: int
    label: str
    passed: bool


CHECKLIST = [
    ChecklistItem("OIDC Provider exists in IAM", ("oidc.provider",)),
    ChecklistItem("IAM Role exists", ("iam.role",)),
    ChecklistItem(
        "Trust Policy correctly configured",
        ("trust_policy.principal", "trust_policy.action", "trust_policy.aud", "trust_policy.sub"),
    ),
    ChecklistItem("Permissions Policy attached", ("iam.policy_attached",)),
    ChecklistItem("ServiceAccount exists", ("service_account.exists",)),
    ChecklistItem("ServiceAccount annotation correct", ("service_account.annotation",)),
    ChecklistItem("Controller deployment exists", ("controller.deployment",)),
    ChecklistItem("Controller pods running", ("pod.phase",), match_any=True),
    ChecklistItem("IngressClass 'alb' exists", ("ingress_class.exists",)),
    ChecklistItem("Subnets tagged for ELB", ("subnet.elb_tag",), match_any=True),
]


@dataclass
class RunReport:
    """Counters and results accumulated across the pipeline stages."""

    mode: str = RemediationMode.INTERACTIVE
    log_path: Optional[str] = None
    backup_dir: Optional[str] = None
    started_at: Optional[datetime] = None
    critical_issues: int = 0
    warnings: int = 0
    fixes_applied: int = 0
    backups_created: int = 0
    backup_paths: list[str] = field(default_factory=list)
    dry_run_notices: list[str] = field(default_factory=list)
    skipped_fixes: list[str] = field(default_factory=list)
    failed_fixes: list[str] = field(default_factory=list)
    initial_checks: list[Check] = field(default_factory=list)
    final_checks: list[Check] = field(default_factory=list)
    checklist: list[ChecklistResult] = field(default_factory=list)

    def record_checks(self, checks: list) -> None:
        self.initial_checks = list(checks)
        self.final_checks = list(checks)
        self.critical_issues = sum(1 for check in checks if check.status == CheckStatus.FAIL)
        self.warnings = sum(1 for check in checks if check.status == CheckStatus.WARN)

    def record_backup(self, path: str) -> None:
        self.backups_created += 1
        self.backup_paths.append(path)

    @property
    def checklist_score(self) -> int:
        return sum(1 for item in self.checklist if item.passed)

    @property
    def healthy(self) -> bool:
        return self.critical_issues == 0 and self.checklist_score >= CHECKLIST_HEALTHY_MIN


# === SECTION 5: EXTERNAL CLIENTS ===


class CommandRunner:
    """Run external CLI tools without a shell."""

    def __init__(self, timeout: int = DEFAULT_TIMEOUT):
        self.timeout = timeout

    def run(self, cmd_parts: list, timeout: Optional[int] = None, input_text: Optional[str] = None) -> tuple[bool, str]:
        """Execute a command safely without shell injection risk.

        Args:
            cmd_parts: List of command parts (e.g., ['kubectl', 'get', 'pods'])
            timeout: Command timeout in seconds (defaults to the runner timeout)
            input_text: Optional text passed on stdin

        Returns:
            Tuple of (success, output_or_error)
        """
        logger.debug(f"Running: {' '.join(cmd_parts)}")
        try:
            result = subprocess.run(
                cmd_parts,
                shell=False,
                capture_output=True,
                text=True,
                check=True,
                timeout=timeout or self.timeout,
                input=input_text,
            )
            return True, result.stdout
        except subprocess.TimeoutExpired:
            return False, f"{cmd_parts[0]} command timed out"
        except subprocess.CalledProcessError as e:
            return False, e.stderr if e.stderr else "Command failed"
        except FileNotFoundError:
            return False, f"{cmd_parts[0]} not found in PATH"

    @staticmethod
    def available(tool: str) -> bool:
        return shutil.which(tool) is not None


class KubeClient:
    """kubectl wrapper. Reads return None for NotFound and raise KubectlError otherwise."""

    def __init__(self, runner: Optional[CommandRunner] = None, context: Optional[str] = None):
        self.runner = runner or CommandRunner()
        self.context = context

    def _kubectl(self, args: list, timeout: Optional[int] = None, input_text: Optional[str] = None) -> str:
        cmd = ["kubectl", *args]
        if self.context:
            cmd += ["--context", self.context]
        success, output = self.runner.run(cmd, timeout=timeout, input_text=input_text)
        if not success:
            raise KubectlError(output.strip() or "kubectl command failed", command=cmd)
        return output

    @staticmethod
    def _is_not_found(error: Exception) -> bool:
        return "(NotFound)" in str(error)

    def _get_json(self, args: list) -> Optional[dict]:
        try:
            output = self._kubectl([*args, "-o", "json"])
        except KubectlError as e:
            if self._is_not_found(e):
                return None
            raise
        try:
            return json.loads(output)
        except json.JSONDecodeError as e:
            raise KubectlError(f"Malformed JSON from kubectl: {e}")

    def cluster_reachable(self) -> tuple[bool, str]:
        try:
            self._kubectl(["cluster-info"])
        except KubectlError as e:
            return False, str(e)
        return True, ""

    def count_nodes(self) -> int:
        nodes = self._get_json(["get", "nodes"]) or {}
        return len(nodes.get("items", []))

    def get_resource(self, kind: str, name: str, namespace: Optional[str] = None) -> Optional[dict]:
        args = ["get", kind, name]
        if namespace:
            args += ["-n", namespace]
        return self._get_json(args)

    def list_resources(
        self,
        kind: str,
        namespace: Optional[str] = None,
        selector: Optional[str] = None,
        field_selector: Optional[str] = None,
    ) -> list:
        args = ["get", kind]
        if namespace:
            args += ["-n", namespace]
        else:
            args.append("--all-namespaces")
        if selector:
            args += ["-l", selector]
        if field_selector:
            args += ["--field-selector", field_selector]
        data = self._get_json(args) or {}
        return data.get("items", [])

    def pod_logs(self, name: str, namespace: str, tail: int = POD_LOG_TAIL_LINES) -> str:
        return self._kubectl(["logs", name, "-n", namespace, f"--tail={tail}"])

    def pod_env(self, name: str, namespace: str, variable: str) -> Optional[str]:
        """Value of an env var inside the pod, None when unset or unreadable."""
        try:
            value = self._kubectl(["exec", name, "-n", namespace, "--", "printenv", variable]).strip()
        except KubectlError as e:
            logger.debug(f"printenv {variable} in {namespace}/{name} failed: {e}")
            return None
        return value or None

    def recent_events(self, name: str, namespace: str, limit: int = MAX_RECENT_EVENTS) -> list[str]:
        items = self.list_resources("events", namespace, field_selector=f"involvedObject.name={name}")

        def event_time(event):
            raw = (
                event.get("lastTimestamp")
                or event.get("eventTime")
                or event.get("metadata", {}).get("creationTimestamp")
            )
            try:
                return date_parser.parse(raw) if raw else datetime.min.replace(tzinfo=timezone.utc)
            except (ValueError, OverflowError):
                return datetime.min.replace(tzinfo=timezone.utc)

        lines = []
        for event in sorted(items, key=event_time)[-limit:]:
            lines.append(f"{event.get('type', 'Normal')} {event.get('reason', '')}: {(event.get('message') or '').strip()}")
        return lines

    # Mutating operations

    def create_namespace(self, namespace: str) -> str:
        return self._kubectl(["create", "namespace", namespace])

    def apply_manifest(self, manifest: dict) -> str:
        return self._kubectl(["apply", "-f", "-"], input_text=yaml.safe_dump(manifest, sort_keys=False))

    def annotate(self, kind: str, name: str, namespace: str, key: str, value: str) -> str:
        return self._kubectl(["annotate", kind, name, "-n", namespace, f"{key}={value}", "--overwrite"])

    def patch_service_account_name(self, deployment: str, namespace: str, service_account: str) -> str:
        patch = {"spec": {"template": {"spec": {"serviceAccountName": service_account}}}}
        return self._kubectl(["patch", "deployment", deployment, "-n", namespace, "-p", json.dumps(patch)])


class AWSClient:
    """boto3 wrapper for the STS, EKS, IAM and EC2 calls the diagnostics make.

    ClientError/BotoCoreError are translated into AWSAPIError carrying the
    AWS error code. Lookups that hit NoSuchEntity return None.
    """

    def __init__(self, profile: Optional[str] = None, region: Optional[str] = None, session=None):
        try:
            self.session = session or boto3.Session(profile_name=profile, region_name=region)
            self.sts_client = self.session.client("sts")
            self.eks_client = self.session.client("eks")
            self.iam_client = self.session.client("iam")
            self.ec2_client = self.session.client("ec2")
        except botocore.exceptions.BotoCoreError as e:
            raise AWSAuthenticationError(f"Failed to initialize AWS session: {e}")

    @staticmethod
    def _translate(error: Exception) -> AWSAPIError:
        if isinstance(error, botocore.exceptions.ClientError):
            details = error.response.get("Error", {})
            return AWSAPIError(details.get("Message") or str(error), code=details.get("Code", ""))
        return AWSAPIError(str(error))

    def _call(self, func: Callable, **kwargs) -> dict:
        try:
            return func(**kwargs)
        except (botocore.exceptions.ClientError, botocore.exceptions.BotoCoreError) as e:
            raise self._translate(e) from e

    def _paginate(self, client, operation: str, result_key: str, **kwargs) -> list:
        items = []
        try:
            for page in client.get_paginator(operation).paginate(**kwargs):
                items.extend(page.get(result_key, []))
        except (botocore.exceptions.ClientError, botocore.exceptions.BotoCoreError) as e:
            raise self._translate(e) from e
        return items

    def _lookup(self, func: Callable, **kwargs) -> Optional[dict]:
        try:
            return self._call(func, **kwargs)
        except AWSAPIError as e:
            if e.code == "NoSuchEntity":
                return None
            raise

    def get_caller_identity(self) -> dict:
        try:
            return self._call(self.sts_client.get_caller_identity)
        except AWSAPIError as e:
            raise AWSAuthenticationError(f"AWS authentication failed: {e}")

    def describe_cluster(self, name: str) -> dict:
        return self._call(self.eks_client.describe_cluster, name=name)["cluster"]

    def get_oidc_provider(self, arn: str) -> Optional[dict]:
        return self._lookup(self.iam_client.get_open_id_connect_provider, OpenIDConnectProviderArn=arn)

    def list_oidc_provider_arns(self) -> list[str]:
        response = self._call(self.iam_client.list_open_id_connect_providers)
        return [provider["Arn"] for provider in response.get("OpenIDConnectProviderList", [])]

    def get_role(self, role_name: str) -> Optional[dict]:
        response = self._lookup(self.iam_client.get_role, RoleName=role_name)
        return response["Role"] if response else None

    def list_attached_role_policies(self, role_name: str) -> list[dict]:
        return self._paginate(self.iam_client, "list_attached_role_policies", "AttachedPolicies", RoleName=role_name)

    def find_local_policy(self, policy_name: str) -> Optional[dict]:
        for policy in self._paginate(self.iam_client, "list_policies", "Policies", Scope="Local"):
            if policy.get("PolicyName") == policy_name:
                return policy
        return None

    def search_role_names(self, keywords) -> list[str]:
        roles = self._paginate(self.iam_client, "list_roles", "Roles")
        return [role["RoleName"] for role in roles if any(k in role["RoleName"].lower() for k in keywords)]

    def search_policy_names(self, keywords) -> list[str]:
        policies = self._paginate(self.iam_client, "list_policies", "Policies", Scope="Local")
        return [p["PolicyName"] for p in policies if any(k in p["PolicyName"].lower() for k in keywords)]

    def get_subnet_tags(self, subnet_ids: list) -> dict:
        """Map subnet id to its tags as a plain dict."""
        response = self._call(self.ec2_client.describe_subnets, SubnetIds=list(subnet_ids))
        return {
            subnet["SubnetId"]: {tag["Key"]: tag["Value"] for tag in subnet.get("Tags", [])}
            for subnet in response.get("Subnets", [])
        }

    # Mutating operations

    def update_assume_role_policy(self, role_name: str, document: dict) -> None:
        self._call(self.iam_client.update_assume_role_policy, RoleName=role_name, PolicyDocument=json.dumps(document))

    def create_policy(self, policy_name: str, document: dict) -> str:
        response = self._call(
            self.iam_client.create_policy,
            PolicyName=policy_name,
            PolicyDocument=json.dumps(document),
        )
        return response["Policy"]["Arn"]

    def attach_role_policy(self, role_name: str, policy_arn: str) -> None:
        self._call(self.iam_client.attach_role_policy, RoleName=role_name, PolicyArn=policy_arn)

    def create_tags(self, resource_id: str, key: str, value: str) -> None:
        self._call(self.ec2_client.create_tags, Resources=[resource_id], Tags=[{"Key": key, "Value": value}])


class ClusterTooling:
    """eksctl and Helm operations used by remediation."""

    def __init__(self, runner: Optional[CommandRunner] = None, timeout: int = INSTALL_TIMEOUT):
        self.runner = runner or CommandRunner()
        self.timeout = timeout

    def _run(self, cmd_parts: list) -> str:
        success, output = self.runner.run(cmd_parts, timeout=self.timeout)
        if not success:
            raise CommandError(output.strip() or f"{cmd_parts[0]} failed", command=cmd_parts)
        return output

    def associate_oidc_provider(self, cluster_name: str, region: str) -> str:
        return self._run(
            [
                "eksctl",
                "utils",
                "associate-iam-oidc-provider",
                f"--cluster={cluster_name}",
                f"--region={region}",
                "--approve",
            ]
        )

    def install_controller(
        self, cluster_name: str, region: str, namespace: str, service_account: str, vpc_id: Optional[str]
    ) -> str:
        try:
            self._run(["helm", "repo", "add", HELM_REPO_NAME, HELM_REPO_URL])
        except CommandError as e:
            if "already exists" not in str(e):
                raise
        self._run(["helm", "repo", "update"])

        cmd = [
            "helm",
            "install",
            CONTROLLER_NAME,
            f"{HELM_REPO_NAME}/{CONTROLLER_NAME}",
            "-n",
            namespace,
            "--set",
            f"clusterName={cluster_name}",
            "--set",
            "serviceAccount.create=false",
            "--set",
            f"serviceAccount.name={service_account}",
            "--set",
            f"region={region}",
        ]
        if vpc_id:
            cmd += ["--set", f"vpcId={vpc_id}"]
        return self._run(cmd)


def fetch_lbc_iam_policy(url: str = LBC_IAM_POLICY_URL, timeout: int = POLICY_DOWNLOAD_TIMEOUT) -> dict:
    """Download the upstream IAM permissions policy for the controller."""
    try:
        response = requests.get(url, timeout=timeout)
        response.raise_for_status()
        document = response.json()
    except (requests.RequestException, ValueError) as e:
        raise PolicyDownloadError(f"Failed to download IAM policy from {url}: {e}")
    if not isinstance(document, dict) or "Statement" not in document:
        raise PolicyDownloadError(f"Downloaded document from {url} is not an IAM policy")
    return document


# === SECTION 6: FACT COLLECTION ===


class FactCollector:
    """Read-only queries against EKS, IAM, EC2 and the cluster API.

    Only a failed cluster describe is fatal. Any other query failure is
    recorded in ``ClusterFacts.unavailable`` and collection continues.
    """

    def __init__(self, config: DiagnosticsConfig, aws: AWSClient, kube: KubeClient, progress: ProgressTracker):
        self.config = config
        self.aws = aws
        self.kube = kube
        self.progress = progress

    def collect(self, preflight: PreflightResult) -> ClusterFacts:
        facts = ClusterFacts(
            cluster_name=self.config.cluster_name,
            region=self.config.region,
            account_id=preflight.account_id,
            caller_arn=preflight.caller_arn,
            node_count=preflight.node_count,
            tools=dict(preflight.tools),
        )
        self._collect_cluster(facts)

        collectors = (
            ("aws_auth", self._collect_aws_auth),
            ("oidc_provider", self._collect_oidc_provider),
            ("iam_role", self._collect_role),
            ("iam_policy", self._collect_policy),
            ("namespace", self._collect_namespace),
            ("service_account", self._collect_service_account),
            ("subnets", self._collect_subnets),
            ("controller_deployment", self._collect_deployment),
            ("controller_pods", self._collect_pods),
            ("ingress_class", self._collect_ingress_class),
            ("ingresses", self._collect_ingresses),
        )
        for key, collector in collectors:
            self._gather(facts, key, collector)
        return facts

    def _gather(self, facts: ClusterFacts, key: str, collector: Callable) -> None:
        try:
            collector(facts)
        except (AWSAPIError, KubectlError) as e:
            facts.unavailable[key] = str(e)
            self.progress.warning(f"Could not collect {key.replace('_', ' ')}: {e}")

    def _collect_cluster(self, facts: ClusterFacts) -> None:
        self.progress.step(f"Describing EKS cluster {facts.cluster_name}")
        try:
            cluster = self.aws.describe_cluster(facts.cluster_name)
        except AWSAPIError as e:
            raise ClusterAccessError(f"Failed to describe cluster {facts.cluster_name}: {e}")

        facts.snapshots["cluster-info.json"] = json.dumps(cluster, indent=2, default=str)
        facts.cluster_status = cluster.get("status")
        facts.cluster_version = cluster.get("version")
        facts.cluster_endpoint = cluster.get("endpoint")
        vpc_config = cluster.get("resourcesVpcConfig", {})
        facts.vpc_id = vpc_config.get("vpcId")
        facts.subnet_ids = list(vpc_config.get("subnetIds", []))
        facts.oidc_issuer = cluster.get("identity", {}).get("oidc", {}).get("issuer")
        self.progress.info(f"Cluster version {facts.cluster_version}, VPC {facts.vpc_id}")

    def _collect_aws_auth(self, facts: ClusterFacts) -> None:
        self.progress.step("Backing up aws-auth ConfigMap")
        config_map = self.kube.get_resource("configmap", "aws-auth", "kube-system")
        if config_map is None:
            self.progress.info("aws-auth ConfigMap not present (access entries may be in use)")
            return
        facts.snapshots["aws-auth-configmap.yaml"] = yaml.safe_dump(config_map, sort_keys=False)

    def _collect_oidc_provider(self, facts: ClusterFacts) -> None:
        self.progress.step("Checking if OIDC provider exists in IAM")
        arn = facts.oidc_provider_arn
        if not arn:
            return
        provider = self.aws.get_oidc_provider(arn)
        if provider is None:
            facts.oidc_provider = OIDCProviderFacts(arn=arn, registered=False)
            return
        facts.oidc_provider = OIDCProviderFacts(
            arn=arn,
            registered=True,
            client_ids=list(provider.get("ClientIDList", [])),
            thumbprints=list(provider.get("ThumbprintList", [])),
        )

    def _collect_role(self, facts: ClusterFacts) -> None:
        role_name = self.config.role_name
        self.progress.step(f"Searching for IAM role: {role_name}")
        role = self.aws.get_role(role_name)
        if role is None:
            try:
                facts.role_candidates = self.aws.search_role_names(CANDIDATE_KEYWORDS)
            except AWSAPIError as e:
                logger.debug(f"Role candidate search failed: {e}")
            return

        facts.role_arn = role.get("Arn")
        facts.role_created = role.get("CreateDate")
        facts.snapshots["iam-role-info.json"] = json.dumps(role, indent=2, default=str)

        raw_trust = role.get("AssumeRolePolicyDocument")
        facts.snapshots["trust-policy-original.json"] = (
            raw_trust if isinstance(raw_trust, str) else json.dumps(raw_trust, indent=2, default=str)
        )
        try:
            facts.trust_policy = TrustPolicyDocument.parse(raw_trust)
        except TrustPolicyParseError as e:
            facts.unavailable["trust_policy"] = str(e)

        try:
            facts.attached_policies = self.aws.list_attached_role_policies(role_name)
        except AWSAPIError as e:
            facts.unavailable["attached_policies"] = str(e)

    def _collect_policy(self, facts: ClusterFacts) -> None:
        policy_name = self.config.policy_name
        self.progress.step(f"Searching for IAM policy: {policy_name}")
        policy = self.aws.find_local_policy(policy_name)
        if policy is None:
            try:
                facts.policy_candidates = self.aws.search_policy_names(CANDIDATE_KEYWORDS)
            except AWSAPIError as e:
                logger.debug(f"Policy candidate search failed: {e}")
            return
        facts.policy_arn = policy.get("Arn")
        facts.policy_version = policy.get("DefaultVersionId")

    def _collect_namespace(self, facts: ClusterFacts) -> None:
        self.progress.step(f"Checking namespace: {self.config.namespace}")
        facts.namespace_exists = self.kube.get_resource("namespace", self.config.namespace) is not None

    def _collect_service_account(self, facts: ClusterFacts) -> None:
        name, namespace = self.config.service_account, self.config.namespace
        self.progress.step(f"Checking ServiceAccount: {name} in {namespace}")
        raw = self.kube.get_resource("serviceaccount", name, namespace)
        if raw is None:
            facts.service_account = ServiceAccountFacts(name=name, namespace=namespace, exists=False)
            return
        facts.snapshots["serviceaccount.yaml"] = yaml.safe_dump(raw, sort_keys=False)
        annotations = raw.get("metadata", {}).get("annotations") or {}
        facts.service_account = ServiceAccountFacts(
            name=name,
            namespace=namespace,
            exists=True,
            role_arn_annotation=annotations.get(ROLE_ARN_ANNOTATION),
        )

    def _collect_subnets(self, facts: ClusterFacts) -> None:
        self.progress.step("Checking subnet tags for load balancer discovery")
        if not facts.subnet_ids:
            return
        tags_by_subnet = self.aws.get_subnet_tags(facts.subnet_ids)
        facts.subnets = [
            SubnetFacts(subnet_id=subnet_id, tags=tags_by_subnet[subnet_id])
            for subnet_id in facts.subnet_ids
            if subnet_id in tags_by_subnet
        ]

    def _collect_deployment(self, facts: ClusterFacts) -> None:
        self.progress.step("Checking AWS Load Balancer Controller deployment")
        items = self.kube.list_resources("deployments", self.config.namespace, selector=CONTROLLER_SELECTOR)
        if not items:
            return
        deployment = items[0]
        spec = deployment.get("spec", {})
        pod_spec = spec.get("template", {}).get("spec", {})
        containers = pod_spec.get("containers") or [{}]
        desired = spec.get("replicas")
        facts.deployment = DeploymentFacts(
            name=deployment.get("metadata", {}).get("name", CONTROLLER_NAME),
            namespace=self.config.namespace,
            desired_replicas=1 if desired is None else int(desired),
            ready_replicas=int(deployment.get("status", {}).get("readyReplicas") or 0),
            image=containers[0].get("image", ""),
            service_account=pod_spec.get("serviceAccountName") or "default",
        )

    def _collect_pods(self, facts: ClusterFacts) -> None:
        namespace = self.config.namespace
        self.progress.step("Checking AWS Load Balancer Controller pods")
        for item in self.kube.list_resources("pods", namespace, selector=CONTROLLER_SELECTOR):
            status = item.get("status", {})
            container_statuses = status.get("containerStatuses") or [{}]
            pod = PodFacts(
                name=item.get("metadata", {}).get("name", ""),
                phase=status.get("phase", "Unknown"),
                ready=bool(container_statuses[0].get("ready", False)),
                restart_count=int(container_statuses[0].get("restartCount") or 0),
            )

            try:
                pod.logs = self.kube.pod_logs(pod.name, namespace, tail=POD_LOG_TAIL_LINES)
                facts.artifacts[f"lbc-pod-{pod.name}.log"] = self.kube.pod_logs(
                    pod.name, namespace, tail=POD_LOG_ARTIFACT_LINES
                )
            except KubectlError as e:
                pod.logs_error = str(e)

            if pod.phase == "Running":
                pod.web_identity_token_file = self.kube.pod_env(pod.name, namespace, "AWS_WEB_IDENTITY_TOKEN_FILE")
                pod.role_arn_env = self.kube.pod_env(pod.name, namespace, "AWS_ROLE_ARN")
            else:
                try:
                    pod.events = self.kube.recent_events(pod.name, namespace)
                except KubectlError as e:
                    logger.debug(f"Could not read events for pod {pod.name}: {e}")
            facts.pods.append(pod)

    def _collect_ingress_class(self, facts: ClusterFacts) -> None:
        self.progress.step(f"Checking IngressClass: {INGRESS_CLASS_NAME}")
        raw = self.kube.get_resource("ingressclass", INGRESS_CLASS_NAME)
        if raw is None:
            return
        facts.ingress_class = IngressClassFacts(
            name=INGRESS_CLASS_NAME,
            controller=raw.get("spec", {}).get("controller", ""),
        )

    def _collect_ingresses(self, facts: ClusterFacts) -> None:
        self.progress.step("Checking Ingress resources")
        for item in self.kube.list_resources("ingresses"):
            metadata = item.get("metadata", {})
            annotations = metadata.get("annotations") or {}
            lb_entries = item.get("status", {}).get("loadBalancer", {}).get("ingress") or [{}]
            ingress = IngressFacts(
                namespace=metadata.get("namespace", "default"),
                name=metadata.get("name", ""),
                ingress_class=item.get("spec", {}).get("ingressClassName") or annotations.get(INGRESS_CLASS_ANNOTATION),
                hostname=lb_entries[0].get("hostname"),
            )
            if not ingress.hostname:
                try:
                    ingress.events = self.kube.recent_events(ingress.name, ingress.namespace)
                except KubectlError as e:
                    logger.debug(f"Could not read events for ingress {ingress.name}: {e}")
            facts.ingresses.append(ingress)


# === SECTION 7: RULE EVALUATION ===


class RuleEvaluator:
    """Pure mapping from ClusterFacts to an ordered list of Checks.

    No I/O happens here. Evaluating the same facts twice gives equal results.
    """

    def __init__(self, config: DiagnosticsConfig):
        self.config = config

    def evaluate(self, facts: ClusterFacts) -> list[Check]:
        checks = []
        for rule in (
            self._tooling_checks,
            self._cluster_checks,
            self._oidc_checks,
            self._role_checks,
            self._trust_policy_checks,
            self._policy_checks,
            self._service_account_checks,
            self._subnet_checks,
            self._deployment_checks,
            self._pod_checks,
            self._ingress_class_checks,
            self._ingress_checks,
        ):
            checks.extend(rule(facts))
        return checks

    @staticmethod
    def _unavailable(name: str, message: str, error: str, resource: Optional[str] = None) -> Check:
        return Check(name=name, status=CheckStatus.FAIL, message=message, observed=error, resource=resource)

    def _tooling_checks(self, facts: ClusterFacts) -> list[Check]:
        checks = []
        for tool in OPTIONAL_TOOLS:
            if facts.tools.get(tool):
                checks.append(Check(f"tooling.{tool}", CheckStatus.PASS, f"{tool} is installed"))
            else:
                checks.append(
                    Check(
                        f"tooling.{tool}",
                        CheckStatus.WARN,
                        f"{tool} not installed (some auto-fixes won't be available)",
                    )
                )
        return checks

    def _cluster_checks(self, facts: ClusterFacts) -> list[Check]:
        if facts.cluster_status == "ACTIVE":
            return [Check("cluster.status", CheckStatus.PASS, f"Cluster status: ACTIVE (Kubernetes {facts.cluster_version})")]
        return [
            Check(
                "cluster.status",
                CheckStatus.WARN,
                f"Cluster status is {facts.cluster_status}",
                observed=facts.cluster_status,
                expected="ACTIVE",
            )
        ]

    def _associate_oidc_fix(self, facts: ClusterFacts) -> Optional[Remediation]:
        if not facts.tools.get("eksctl"):
            return None
        return Remediation(
            action="associate_oidc_provider",
            description="Associate OIDC provider with cluster?",
            risk=RiskTier.HIGH,
            command=(
                f"eksctl utils associate-iam-oidc-provider --cluster={facts.cluster_name} "
                f"--region={facts.region} --approve"
            ),
        )

    def _oidc_checks(self, facts: ClusterFacts) -> list[Check]:
        fix = self._associate_oidc_fix(facts)
        no_eksctl = None if fix else "Install eksctl, or create the OIDC provider manually in the IAM console"
        if not facts.oidc_issuer:
            return [
                Check(
                    "oidc.issuer",
                    CheckStatus.FAIL,
                    "OIDC provider NOT configured on cluster",
                    details=["This is the root cause of 'sts:AssumeRoleWithWebIdentity' errors"],
                    remediation=fix,
                    suggestion=no_eksctl,
                )
            ]

        checks = [Check("oidc.issuer", CheckStatus.PASS, f"OIDC Issuer URL: {facts.oidc_issuer}")]
        if "oidc_provider" in facts.unavailable:
            checks.append(
                self._unavailable(
                    "oidc.provider", "Could not verify OIDC provider in IAM", facts.unavailable["oidc_provider"]
                )
            )
            return checks

        provider = facts.oidc_provider
        if provider is None or not provider.registered:
            checks.append(
                Check(
                    "oidc.provider",
                    CheckStatus.FAIL,
                    "OIDC provider NOT found in IAM",
                    expected=facts.oidc_provider_arn,
                    observed="not registered",
                    remediation=fix,
                    suggestion=no_eksctl,
                )
            )
            return checks

        checks.append(Check("oidc.provider", CheckStatus.PASS, "OIDC provider exists in IAM", resource=provider.arn))
        if STS_AUDIENCE in provider.client_ids:
            checks.append(Check("oidc.client_ids", CheckStatus.PASS, f"OIDC client IDs include {STS_AUDIENCE}"))
        else:
            checks.append(
                Check(
                    "oidc.client_ids",
                    CheckStatus.WARN,
                    f"{STS_AUDIENCE} not in OIDC client ID list",
                    observed=", ".join(provider.client_ids) or "none",
                    expected=STS_AUDIENCE,
                )
            )
        return checks

    def _role_checks(self, facts: ClusterFacts) -> list[Check]:
        role_name = self.config.role_name
        if "iam_role" in facts.unavailable:
            return [self._unavailable("iam.role", f"Could not look up IAM role '{role_name}'", facts.unavailable["iam_role"])]
        if not facts.role_arn:
            details = [f"Possible roles: {', '.join(facts.role_candidates)}"] if facts.role_candidates else []
            return [
                Check(
                    "iam.role",
                    CheckStatus.FAIL,
                    f"IAM Role '{role_name}' not found!",
                    details=details,
                    suggestion="Pass the correct role with --role-name",
                )
            ]

        checks = [
            Check(
                "iam.role",
                CheckStatus.PASS,
                f"Found IAM Role: {facts.role_arn} (created {format_timestamp(facts.role_created, self.config.timezone)})",
                resource=facts.role_arn,
            )
        ]
        if "attached_policies" in facts.unavailable:
            checks.append(
                self._unavailable(
                    "iam.attached_policies",
                    "Could not list policies attached to role",
                    facts.unavailable["attached_policies"],
                )
            )
        else:
            names = [policy.get("PolicyName", "") for policy in facts.attached_policies]
            checks.append(
                Check(
                    "iam.attached_policies",
                    CheckStatus.PASS,
                    f"Role has {len(names)} managed policy attachment(s)",
                    details=names,
                )
            )
        return checks

    def _trust_policy_checks(self, facts: ClusterFacts) -> list[Check]:
        if not facts.role_arn:
            return []
        if "trust_policy" in facts.unavailable or facts.trust_policy is None:
            return [
                self._unavailable(
                    "trust_policy.document",
                    "Trust policy could not be read",
                    facts.unavailable.get("trust_policy", "missing"),
                )
            ]

        statement = facts.trust_policy.web_identity_statement()
        provider_arn = facts.oidc_provider_arn
        provider_id = facts.oidc_provider_id
        subject = self.config.expected_subject
        checks = []

        federated = statement.federated if statement else []
        if not federated:
            checks.append(
                Check(
                    "trust_policy.principal",
                    CheckStatus.FAIL,
                    "No Federated principal in trust policy",
                    expected=provider_arn,
                    observed="none",
                )
            )
        elif provider_arn not in federated:
            checks.append(
                Check(
                    "trust_policy.principal",
                    CheckStatus.FAIL,
                    "Trust Policy Principal MISMATCH!",
                    expected=provider_arn,
                    observed=", ".join(federated),
                )
            )
        else:
            checks.append(Check("trust_policy.principal", CheckStatus.PASS, "Trust Policy Principal is correct"))

        actions = statement.actions if statement else []
        if WEB_IDENTITY_ACTION in actions:
            checks.append(Check("trust_policy.action", CheckStatus.PASS, "Trust Policy Action is correct"))
        else:
            checks.append(
                Check(
                    "trust_policy.action",
                    CheckStatus.FAIL,
                    "Trust Policy Action is incorrect!",
                    expected=WEB_IDENTITY_ACTION,
                    observed=", ".join(actions) or "none",
                )
            )

        for suffix, expected_value in (("aud", STS_AUDIENCE), ("sub", subject)):
            key = f"{provider_id}:{suffix}" if provider_id else f"<oidc-provider>:{suffix}"
            matches = statement.condition_matches(key, expected_value) if statement and provider_id else None
            name = f"trust_policy.{suffix}"
            if matches is None:
                checks.append(
                    Check(
                        name,
                        CheckStatus.FAIL,
                        f"Trust Policy missing '{suffix}' condition!",
                        expected=f"{key} = {expected_value}",
                        observed="not present",
                    )
                )
            elif not matches:
                found = statement.condition_values(key)
                checks.append(
                    Check(
                        name,
                        CheckStatus.FAIL,
                        f"Trust Policy '{suffix}' condition MISMATCH!",
                        expected=expected_value,
                        observed=", ".join(found),
                    )
                )
            else:
                checks.append(Check(name, CheckStatus.PASS, f"Trust Policy '{suffix}' condition is correct"))

        return self._attach_trust_fix(checks, facts)

    def _attach_trust_fix(self, checks: list, facts: ClusterFacts) -> list:
        failing = [index for index, check in enumerate(checks) if check.failed]
        if not failing:
            return checks

        provider_arn, provider_id = facts.oidc_provider_arn, facts.oidc_provider_id
        if not provider_arn:
            for index in failing:
                checks[index] = replace(
                    checks[index], suggestion="Associate the cluster OIDC provider first, then re-run"
                )
            return checks

        fix = Remediation(
            action="update_trust_policy",
            description="Update Trust Policy to correct configuration?",
            risk=RiskTier.HIGH,
            command=(
                f"aws iam update-assume-role-policy --role-name {self.config.role_name} "
                "--policy-document file://trust-policy-correct.json"
            ),
            resource=self.config.role_name,
            params={"document": build_trust_policy(provider_arn, provider_id, self.config.expected_subject)},
        )
        first, rest = failing[0], failing[1:]
        checks[first] = replace(checks[first], remediation=fix)
        for index in rest:
            checks[index] = replace(checks[index], suggestion="Covered by the trust policy rewrite above")
        return checks

    def _policy_checks(self, facts: ClusterFacts) -> list[Check]:
        policy_name = self.config.policy_name
        if "iam_policy" in facts.unavailable:
            return [self._unavailable("iam.policy", f"Could not look up IAM policy '{policy_name}'", facts.unavailable["iam_policy"])]

        if not facts.policy_arn:
            details = [f"Possible policies: {', '.join(facts.policy_candidates)}"] if facts.policy_candidates else []
            fix = None
            if facts.role_arn:
                fix = Remediation(
                    action="create_policy",
                    description=f"Download the official LBC policy and create '{policy_name}'?",
                    risk=RiskTier.MEDIUM,
                    command=(
                        f"curl -o iam_policy.json {LBC_IAM_POLICY_URL} && "
                        f"aws iam create-policy --policy-name {policy_name} --policy-document file://iam_policy.json && "
                        f"aws iam attach-role-policy --role-name {self.config.role_name} --policy-arn <new-policy-arn>"
                    ),
                    resource=policy_name,
                )
            return [
                Check(
                    "iam.policy",
                    CheckStatus.FAIL,
                    f"IAM Policy '{policy_name}' not found!",
                    details=details,
                    remediation=fix,
                    suggestion=None if fix else "Create the role first so the policy can be attached",
                )
            ]

        checks = [
            Check(
                "iam.policy",
                CheckStatus.PASS,
                f"Found IAM Policy: {facts.policy_arn} (version {facts.policy_version})",
                resource=facts.policy_arn,
            )
        ]
        if not facts.role_arn or "attached_policies" in facts.unavailable:
            return checks

        attached = [policy.get("PolicyArn") for policy in facts.attached_policies]
        if facts.policy_arn in attached:
            checks.append(Check("iam.policy_attached", CheckStatus.PASS, "Policy is correctly attached to role"))
        else:
            checks.append(
                Check(
                    "iam.policy_attached",
                    CheckStatus.FAIL,
                    "Policy NOT attached to role!",
                    expected=facts.policy_arn,
                    observed=", ".join(attached) or "no policies attached",
                    remediation=Remediation(
                        action="attach_policy",
                        description="Attach policy to role?",
                        risk=RiskTier.LOW,
                        command=(
                            f"aws iam attach-role-policy --role-name {self.config.role_name} "
                            f"--policy-arn {facts.policy_arn}"
                        ),
                        resource=self.config.role_name,
                        params={"policy_arn": facts.policy_arn},
                    ),
                )
            )
        return checks

    def _service_account_checks(self, facts: ClusterFacts) -> list[Check]:
        namespace, name = self.config.namespace, self.config.service_account
        checks = []

        if "namespace" in facts.unavailable:
            checks.append(self._unavailable("namespace.exists", f"Could not check namespace '{namespace}'", facts.unavailable["namespace"]))
        elif facts.namespace_exists is False:
            checks.append(
                Check(
                    "namespace.exists",
                    CheckStatus.FAIL,
                    f"Namespace '{namespace}' not found!",
                    remediation=Remediation(
                        action="create_namespace",
                        description=f"Create namespace '{namespace}'?",
                        risk=RiskTier.LOW,
                        command=f"kubectl create namespace {namespace}",
                        resource=namespace,
                    ),
                )
            )
        else:
            checks.append(Check("namespace.exists", CheckStatus.PASS, f"Namespace '{namespace}' exists"))

        if "service_account" in facts.unavailable:
            checks.append(
                self._unavailable(
                    "service_account.exists", f"Could not check ServiceAccount '{name}'", facts.unavailable["service_account"]
                )
            )
            return checks

        account = facts.service_account
        if account is None or not account.exists:
            fix = None
            if facts.role_arn:
                fix = Remediation(
                    action="create_service_account",
                    description=f"Create ServiceAccount '{name}' annotated with the role ARN?",
                    risk=RiskTier.LOW,
                    command=(
                        f"kubectl create serviceaccount {name} -n {namespace} && "
                        f"kubectl annotate serviceaccount {name} -n {namespace} {ROLE_ARN_ANNOTATION}={facts.role_arn}"
                    ),
                    resource=name,
                    params={"role_arn": facts.role_arn},
                )
            checks.append(
                Check(
                    "service_account.exists",
                    CheckStatus.FAIL,
                    f"ServiceAccount '{name}' not found in namespace '{namespace}'!",
                    remediation=fix,
                    suggestion=None if fix else "Resolve the IAM role first so the ServiceAccount can be annotated",
                )
            )
            return checks

        checks.append(Check("service_account.exists", CheckStatus.PASS, f"ServiceAccount '{name}' exists"))

        annotation = account.role_arn_annotation
        if not facts.role_arn:
            checks.append(
                Check(
                    "service_account.annotation",
                    CheckStatus.WARN,
                    "Cannot verify ServiceAccount annotation: IAM role ARN unknown",
                    observed=annotation or "none",
                )
            )
            return checks

        annotate_fix = Remediation(
            action="annotate_service_account",
            description="Update ServiceAccount annotation?" if annotation else "Add IAM role annotation to ServiceAccount?",
            risk=RiskTier.MEDIUM,
            command=(
                f"kubectl annotate serviceaccount {name} -n {namespace} "
                f"{ROLE_ARN_ANNOTATION}={facts.role_arn} --overwrite"
            ),
            resource=name,
            params={"role_arn": facts.role_arn},
        )
        if not annotation:
            checks.append(
                Check(
                    "service_account.annotation",
                    CheckStatus.FAIL,
                    f"ServiceAccount missing '{ROLE_ARN_ANNOTATION}' annotation!",
                    expected=facts.role_arn,
                    observed="none",
                    remediation=annotate_fix,
                )
            )
        elif annotation != facts.role_arn:
            checks.append(
                Check(
                    "service_account.annotation",
                    CheckStatus.FAIL,
                    "ServiceAccount IAM role annotation MISMATCH!",
                    expected=facts.role_arn,
                    observed=annotation,
                    remediation=annotate_fix,
                )
            )
        else:
            checks.append(Check("service_account.annotation", CheckStatus.PASS, "ServiceAccount annotation is correct"))
        return checks

    def _subnet_checks(self, facts: ClusterFacts) -> list[Check]:
        if "subnets" in facts.unavailable:
            return [self._unavailable("subnets.discovered", "Could not read subnet tags", facts.unavailable["subnets"])]
        if not facts.subnets:
            return [Check("subnets.discovered", CheckStatus.WARN, "No subnets found in cluster VPC configuration")]

        cluster_tag = self.config.cluster_tag_key
        checks = [Check("subnets.discovered", CheckStatus.PASS, f"Found {len(facts.subnets)} subnet(s) in cluster VPC config")]
        for subnet in facts.subnets:
            subnet_id = subnet.subnet_id
            if ELB_ROLE_TAG in subnet.tags or INTERNAL_ELB_ROLE_TAG in subnet.tags:
                checks.append(
                    Check("subnet.elb_tag", CheckStatus.PASS, f"Subnet {subnet_id} has ELB role tag", resource=subnet_id)
                )
            else:
                checks.append(
                    Check(
                        "subnet.elb_tag",
                        CheckStatus.FAIL,
                        f"Subnet {subnet_id} missing required ELB tags!",
                        expected=f"{ELB_ROLE_TAG}=1 (public) or {INTERNAL_ELB_ROLE_TAG}=1 (private)",
                        resource=subnet_id,
                        remediation=Remediation(
                            action="tag_subnet_elb",
                            description=f"Tag subnet {subnet_id} for ELB?",
                            risk=RiskTier.MEDIUM,
                            command=f"aws ec2 create-tags --resources {subnet_id} --tags Key={ELB_ROLE_TAG},Value=1",
                            resource=subnet_id,
                            params={"subnet_id": subnet_id},
                        ),
                    )
                )

            if cluster_tag in subnet.tags:
                checks.append(
                    Check("subnet.cluster_tag", CheckStatus.PASS, f"Subnet {subnet_id} has cluster tag", resource=subnet_id)
                )
            else:
                checks.append(
                    Check(
                        "subnet.cluster_tag",
                        CheckStatus.WARN,
                        f"Subnet {subnet_id} missing cluster tag",
                        expected=f"{cluster_tag}=shared",
                        resource=subnet_id,
                        suggestion=f"aws ec2 create-tags --resources {subnet_id} --tags Key={cluster_tag},Value=shared",
                    )
                )
        return checks

    def _deployment_checks(self, facts: ClusterFacts) -> list[Check]:
        namespace = self.config.namespace
        if "controller_deployment" in facts.unavailable:
            return [
                self._unavailable(
                    "controller.deployment",
                    "Could not query controller deployment",
                    facts.unavailable["controller_deployment"],
                )
            ]

        deployment = facts.deployment
        if deployment is None:
            fix = None
            if facts.tools.get("helm"):
                fix = Remediation(
                    action="install_controller",
                    description="Install AWS Load Balancer Controller via Helm?",
                    risk=RiskTier.HIGH,
                    command=(
                        f"helm install {CONTROLLER_NAME} {HELM_REPO_NAME}/{CONTROLLER_NAME} -n {namespace} "
                        f"--set clusterName={facts.cluster_name} --set serviceAccount.create=false "
                        f"--set serviceAccount.name={self.config.service_account} "
                        f"--set region={facts.region} --set vpcId={facts.vpc_id}"
                    ),
                    resource=CONTROLLER_NAME,
                )
            return [
                Check(
                    "controller.deployment",
                    CheckStatus.FAIL,
                    "AWS Load Balancer Controller deployment not found!",
                    remediation=fix,
                    suggestion=None if fix else f"Helm not installed. Install manually: {LBC_INSTALL_DOC}",
                )
            ]

        checks = [
            Check("controller.deployment", CheckStatus.PASS, f"Found deployment: {deployment.name}", resource=deployment.name)
        ]

        ratio = f"{deployment.ready_replicas}/{deployment.desired_replicas}"
        if deployment.ready_replicas >= deployment.desired_replicas:
            checks.append(Check("controller.replicas", CheckStatus.PASS, f"All replicas are ready ({ratio})"))
        else:
            checks.append(
                Check(
                    "controller.replicas",
                    CheckStatus.FAIL,
                    "Not all replicas are ready!",
                    observed=ratio,
                    expected=f"{deployment.desired_replicas}/{deployment.desired_replicas}",
                )
            )

        minor = facts.cluster_minor_version
        if minor is not None and minor >= CONTROLLER_VERSION_GATE_MINOR:
            version = parse_controller_version(deployment.image)
            minimum = format_version(CONTROLLER_MIN_VERSION)
            if version is None:
                checks.append(
                    Check(
                        "controller.version",
                        CheckStatus.WARN,
                        "Could not determine controller version from image",
                        observed=deployment.image,
                        expected=f">= {minimum}",
                    )
                )
            elif version < CONTROLLER_MIN_VERSION:
                checks.append(
                    Check(
                        "controller.version",
                        CheckStatus.FAIL,
                        f"Controller {format_version(version)} may be incompatible with K8s {facts.cluster_version}!",
                        observed=format_version(version),
                        expected=f">= {minimum}",
                        suggestion="Upgrade the controller with: helm upgrade aws-load-balancer-controller eks/aws-load-balancer-controller",
                    )
                )
            else:
                checks.append(
                    Check(
                        "controller.version",
                        CheckStatus.PASS,
                        f"Controller {format_version(version)} compatible with K8s {facts.cluster_version}",
                    )
                )

        expected_account = self.config.service_account
        patch = json.dumps({"spec": {"template": {"spec": {"serviceAccountName": expected_account}}}})
        if deployment.service_account == expected_account:
            checks.append(
                Check("controller.service_account", CheckStatus.PASS, f"Deployment uses ServiceAccount '{expected_account}'")
            )
        else:
            checks.append(
                Check(
                    "controller.service_account",
                    CheckStatus.FAIL,
                    "Deployment uses wrong ServiceAccount!",
                    expected=expected_account,
                    observed=deployment.service_account,
                    remediation=Remediation(
                        action="patch_deployment_service_account",
                        description="Update deployment to use correct ServiceAccount?",
                        risk=RiskTier.HIGH,
                        command=f"kubectl patch deployment {deployment.name} -n {namespace} -p '{patch}'",
                        resource=deployment.name,
                        params={"deployment": deployment.name},
                    ),
                )
            )
        return checks

    def _pod_checks(self, facts: ClusterFacts) -> list[Check]:
        if "controller_pods" in facts.unavailable:
            return [self._unavailable("controller.pods", "Could not list controller pods", facts.unavailable["controller_pods"])]
        if not facts.pods:
            return [Check("controller.pods", CheckStatus.FAIL, "No controller pods found!")]

        checks = [Check("controller.pods", CheckStatus.PASS, f"Found {len(facts.pods)} controller pod(s)")]
        for pod in facts.pods:
            checks.extend(self._single_pod_checks(pod, facts))
        return checks

    def _single_pod_checks(self, pod: PodFacts, facts: ClusterFacts) -> list[Check]:
        checks = []
        if pod.phase == "Running":
            checks.append(Check("pod.phase", CheckStatus.PASS, f"Pod {pod.name} is Running", resource=pod.name))
        else:
            checks.append(
                Check(
                    "pod.phase",
                    CheckStatus.FAIL,
                    f"Pod {pod.name} is not running!",
                    observed=pod.phase,
                    expected="Running",
                    resource=pod.name,
                    details=[f"Event: {event}" for event in pod.events],
                )
            )

        if pod.ready:
            checks.append(Check("pod.ready", CheckStatus.PASS, f"Pod {pod.name} container is ready", resource=pod.name))
        else:
            checks.append(Check("pod.ready", CheckStatus.FAIL, f"Pod {pod.name} container is NOT ready", resource=pod.name))

        if pod.restart_count > 0:
            checks.append(
                Check(
                    "pod.restarts",
                    CheckStatus.WARN,
                    f"Pod {pod.name} has restarted {pod.restart_count} times",
                    observed=str(pod.restart_count),
                    resource=pod.name,
                )
            )
        else:
            checks.append(Check("pod.restarts", CheckStatus.PASS, f"Pod {pod.name} has no restarts", resource=pod.name))

        checks.append(self._pod_log_check(pod))

        if pod.phase == "Running":
            checks.append(self._web_identity_check(pod, facts))
        return checks

    @staticmethod
    def _pod_log_check(pod: PodFacts) -> Check:
        if pod.logs_error:
            return Check("pod.logs", CheckStatus.WARN, f"Could not read logs for pod {pod.name}", observed=pod.logs_error, resource=pod.name)

        matches = scan_controller_logs(pod.logs)
        failures = [match for match in matches if match["severity"] == CheckStatus.FAIL]
        if failures:
            details = []
            for match in failures:
                details.append(match["issue"])
                details.extend(f"  {sample}" for sample in match["samples"])
            return Check(
                "pod.logs",
                CheckStatus.FAIL,
                f"Pod {pod.name} logs show IAM authentication errors",
                resource=pod.name,
                details=details,
            )

        error_lines = count_error_lines(pod.logs)
        if error_lines or matches:
            details = [match["issue"] for match in matches] + error_lines[:MAX_LOG_SAMPLES]
            return Check(
                "pod.logs",
                CheckStatus.WARN,
                f"Found {len(error_lines)} error message(s) in pod {pod.name} logs",
                resource=pod.name,
                details=details,
            )
        return Check("pod.logs", CheckStatus.PASS, f"No obvious errors in pod {pod.name} logs", resource=pod.name)

    @staticmethod
    def _web_identity_check(pod: PodFacts, facts: ClusterFacts) -> Check:
        problems = []
        if not pod.web_identity_token_file:
            problems.append("AWS_WEB_IDENTITY_TOKEN_FILE not set (IRSA not working)")
        if not pod.role_arn_env:
            problems.append("AWS_ROLE_ARN not set in pod")
        elif facts.role_arn and pod.role_arn_env != facts.role_arn:
            problems.append(f"Pod using wrong role ARN: {pod.role_arn_env}")

        if problems:
            return Check(
                "pod.web_identity",
                CheckStatus.FAIL,
                f"Pod {pod.name} web identity environment is wrong",
                expected=facts.role_arn,
                observed=pod.role_arn_env or "none",
                resource=pod.name,
                details=problems,
                suggestion="Restart the controller after fixing the ServiceAccount annotation",
            )
        return Check(
            "pod.web_identity",
            CheckStatus.PASS,
            f"Pod {pod.name} has web identity token and role ARN",
            resource=pod.name,
        )

    def _ingress_class_checks(self, facts: ClusterFacts) -> list[Check]:
        if "ingress_class" in facts.unavailable:
            return [self._unavailable("ingress_class.exists", "Could not query IngressClass", facts.unavailable["ingress_class"])]
        if facts.ingress_class is None:
            return [
                Check(
                    "ingress_class.exists",
                    CheckStatus.FAIL,
                    f"IngressClass '{INGRESS_CLASS_NAME}' not found!",
                    remediation=Remediation(
                        action="create_ingress_class",
                        description=f"Create IngressClass '{INGRESS_CLASS_NAME}'?",
                        risk=RiskTier.LOW,
                        command="kubectl apply -f - (IngressClass alb, controller ingress.k8s.aws/alb)",
                        resource=INGRESS_CLASS_NAME,
                    ),
                )
            ]

        checks = [Check("ingress_class.exists", CheckStatus.PASS, f"IngressClass '{INGRESS_CLASS_NAME}' exists")]
        if facts.ingress_class.controller == INGRESS_CLASS_CONTROLLER:
            checks.append(Check("ingress_class.controller", CheckStatus.PASS, "IngressClass controller is correct"))
        else:
            checks.append(
                Check(
                    "ingress_class.controller",
                    CheckStatus.WARN,
                    "IngressClass controller unexpected",
                    expected=INGRESS_CLASS_CONTROLLER,
                    observed=facts.ingress_class.controller or "none",
                )
            )
        return checks

    def _ingress_checks(self, facts: ClusterFacts) -> list[Check]:
        if "ingresses" in facts.unavailable:
            return [self._unavailable("ingresses.present", "Could not list Ingress resources", facts.unavailable["ingresses"])]
        if not facts.ingresses:
            return [Check("ingresses.present", CheckStatus.WARN, "No Ingress resources found in cluster")]

        checks = [Check("ingresses.present", CheckStatus.PASS, f"Found {len(facts.ingresses)} Ingress resource(s)")]
        for ingress in facts.ingresses:
            resource = f"{ingress.namespace}/{ingress.name}"
            if ingress.ingress_class == INGRESS_CLASS_NAME:
                checks.append(Check("ingress.class", CheckStatus.PASS, f"Ingress {resource} uses 'alb' class", resource=resource))
            else:
                checks.append(
                    Check(
                        "ingress.class",
                        CheckStatus.WARN,
                        f"Ingress {resource} not using 'alb' class - controller won't process it",
                        expected=INGRESS_CLASS_NAME,
                        observed=ingress.ingress_class or "none",
                        resource=resource,
                    )
                )

            if ingress.hostname:
                checks.append(
                    Check("ingress.hostname", CheckStatus.PASS, f"Ingress {resource} has load balancer: {ingress.hostname}", resource=resource)
                )
            else:
                checks.append(
                    Check(
                        "ingress.hostname",
                        CheckStatus.FAIL,
                        f"Ingress {resource} has NO load balancer address!",
                        resource=resource,
                        details=[f"Event: {event}" for event in ingress.events],
                    )
                )
        return checks


def evaluate(facts: ClusterFacts, config: DiagnosticsConfig) -> list[Check]:
    return RuleEvaluator(config).evaluate(facts)


# === SECTION 8: REMEDIATION ===

ConfirmCallback = Callable[[str, str], bool]


def console_confirm(tier: str, message: str) -> bool:
    """Ask on the terminal. Anything other than y/yes declines."""
    print(f"\n  {RiskTier.get_label(tier)}")
    try:
        reply = input(f"  → {message} (y/N): ")
    except EOFError:
        return False
    return reply.strip().lower() in ("y", "yes")


def deny_all(tier: str, message: str) -> bool:
    return False


class Remediator:
    """Apply, preview or skip fixes for failing checks according to the run mode.

    Each applied fix captures the current value of the target resource into
    the backup store before the single change it makes.
    """

    def __init__(
        self,
        config: DiagnosticsConfig,
        aws: AWSClient,
        kube: KubeClient,
        tooling: ClusterTooling,
        backups: BackupStore,
        progress: ProgressTracker,
        confirm: Optional[ConfirmCallback] = None,
    ):
        self.config = config
        self.aws = aws
        self.kube = kube
        self.tooling = tooling
        self.backups = backups
        self.progress = progress
        self.confirm = confirm or deny_all
        self.mode = config.remediation_mode
        self._handlers = {
            "associate_oidc_provider": (self._snapshot_oidc_providers, self._associate_oidc_provider),
            "update_trust_policy": (self._snapshot_trust_policy, self._update_trust_policy),
            "create_policy": (self._snapshot_attached_policies, self._create_policy),
            "attach_policy": (self._snapshot_attached_policies, self._attach_policy),
            "create_namespace": (self._snapshot_namespace, self._create_namespace),
            "create_service_account": (self._snapshot_service_account, self._create_service_account),
            "annotate_service_account": (self._snapshot_service_account, self._annotate_service_account),
            "tag_subnet_elb": (self._snapshot_subnet_tags, self._tag_subnet),
            "install_controller": (self._snapshot_controller, self._install_controller),
            "patch_deployment_service_account": (self._snapshot_deployment, self._patch_deployment),
            "create_ingress_class": (self._snapshot_ingress_class, self._create_ingress_class),
        }

    def remediate(self, checks: list, facts: ClusterFacts, report: RunReport) -> RunReport:
        pending = [check for check in checks if check.fixable]
        if not pending:
            self.progress.info("No automatic fixes available for the current findings")
            return report

        self.progress.section(f"REMEDIATION ({RemediationMode.get_label(self.mode)})")
        for check in pending:
            remediation = check.remediation
            if self.mode == RemediationMode.DRY_RUN:
                self.progress.dry_run(remediation.command)
                report.dry_run_notices.append(remediation.command)
                continue

            if self.mode == RemediationMode.AUTO_FIX:
                self.progress.info(f"[AUTO-FIX] Applying: {remediation.description}")
            elif not self.confirm(remediation.risk, remediation.description):
                self.progress.info(f"Skipped: {remediation.description}")
                report.skipped_fixes.append(remediation.description)
                continue

            self._apply(remediation, facts, report)
        return report

    def _apply(self, remediation: Remediation, facts: ClusterFacts, report: RunReport) -> bool:
        if remediation.action not in self._handlers:
            raise ValueError(f"Unknown remediation action: {remediation.action}")
        snapshot, mutate = self._handlers[remediation.action]

        try:
            current = snapshot(remediation, facts)
        except (AWSAPIError, KubectlError) as e:
            self.progress.error(f"Could not back up current state, not applying '{remediation.action}': {e}")
            report.failed_fixes.append(remediation.description)
            return False
        path = self.backups.save(remediation.backup_filename, current)
        report.record_backup(path)
        self.progress.backup(f"Saved current state to {path}")

        try:
            outcome = mutate(remediation, facts)
        except (AWSAPIError, CommandError, PolicyDownloadError) as e:
            self.progress.error(f"Fix '{remediation.action}' failed: {e}")
            report.failed_fixes.append(remediation.description)
            return False

        report.fixes_applied += 1
        self.progress.fix(outcome)
        return True

    def _snapshot_oidc_providers(self, remediation, facts):
        return {
            "cluster": facts.cluster_name,
            "oidc_issuer": facts.oidc_issuer,
            "iam_oidc_providers": self.aws.list_oidc_provider_arns(),
        }

    def _associate_oidc_provider(self, remediation, facts):
        self.tooling.associate_oidc_provider(facts.cluster_name, facts.region)
        return "OIDC provider associated with cluster"

    def _snapshot_trust_policy(self, remediation, facts):
        role = self.aws.get_role(self.config.role_name)
        return {
            "RoleName": self.config.role_name,
            "AssumeRolePolicyDocument": role.get("AssumeRolePolicyDocument") if role else None,
        }

    def _update_trust_policy(self, remediation, facts):
        self.aws.update_assume_role_policy(self.config.role_name, remediation.params["document"])
        return "Trust Policy updated (restart controller pods to pick up new credentials)"

    def _snapshot_attached_policies(self, remediation, facts):
        return {
            "RoleName": self.config.role_name,
            "AttachedPolicies": self.aws.list_attached_role_policies(self.config.role_name),
        }

    def _create_policy(self, remediation, facts):
        document = fetch_lbc_iam_policy()
        policy_arn = self.aws.create_policy(self.config.policy_name, document)
        self.aws.attach_role_policy(self.config.role_name, policy_arn)
        return f"Policy {policy_arn} created and attached to {self.config.role_name}"

    def _attach_policy(self, remediation, facts):
        self.aws.attach_role_policy(self.config.role_name, remediation.params["policy_arn"])
        return f"Policy attached to {self.config.role_name}"

    def _snapshot_namespace(self, remediation, facts):
        return {
            "Namespace": self.config.namespace,
            "current": self.kube.get_resource("namespace", self.config.namespace),
        }

    def _create_namespace(self, remediation, facts):
        self.kube.create_namespace(self.config.namespace)
        return f"Namespace {self.config.namespace} created"

    def _snapshot_service_account(self, remediation, facts):
        return {
            "ServiceAccount": f"{self.config.namespace}/{self.config.service_account}",
            "current": self.kube.get_resource("serviceaccount", self.config.service_account, self.config.namespace),
        }

    def _create_service_account(self, remediation, facts):
        manifest = service_account_manifest(
            self.config.service_account, self.config.namespace, remediation.params["role_arn"]
        )
        self.kube.apply_manifest(manifest)
        return f"ServiceAccount {self.config.service_account} created and annotated"

    def _annotate_service_account(self, remediation, facts):
        self.kube.annotate(
            "serviceaccount",
            self.config.service_account,
            self.config.namespace,
            ROLE_ARN_ANNOTATION,
            remediation.params["role_arn"],
        )
        return "ServiceAccount annotation updated"

    def _snapshot_subnet_tags(self, remediation, facts):
        subnet_id = remediation.params["subnet_id"]
        return {"SubnetId": subnet_id, "Tags": self.aws.get_subnet_tags([subnet_id]).get(subnet_id, {})}

    def _tag_subnet(self, remediation, facts):
        subnet_id = remediation.params["subnet_id"]
        self.aws.create_tags(subnet_id, ELB_ROLE_TAG, "1")
        return f"Subnet {subnet_id} tagged with {ELB_ROLE_TAG}=1"

    def _snapshot_controller(self, remediation, facts):
        return {
            "Namespace": self.config.namespace,
            "deployments": self.kube.list_resources("deployments", self.config.namespace, selector=CONTROLLER_SELECTOR),
        }

    def _install_controller(self, remediation, facts):
        self.tooling.install_controller(
            facts.cluster_name, facts.region, self.config.namespace, self.config.service_account, facts.vpc_id
        )
        return "AWS Load Balancer Controller installed via Helm"

    def _snapshot_deployment(self, remediation, facts):
        return self.kube.get_resource("deployment", remediation.params["deployment"], self.config.namespace)

    def _patch_deployment(self, remediation, facts):
        deployment = remediation.params["deployment"]
        self.kube.patch_service_account_name(deployment, self.config.namespace, self.config.service_account)
        return f"Deployment {deployment} now uses ServiceAccount {self.config.service_account}"

    def _snapshot_ingress_class(self, remediation, facts):
        return {"IngressClass": INGRESS_CLASS_NAME, "current": self.kube.get_resource("ingressclass", INGRESS_CLASS_NAME)}

    def _create_ingress_class(self, remediation, facts):
        self.kube.apply_manifest(ingress_class_manifest())
        return f"IngressClass '{INGRESS_CLASS_NAME}' created"


# === SECTION 9: REPORTING ===

SECTION_TITLES = [
    ("tooling", "AUTHENTICATION & BASIC ENVIRONMENT"),
    ("cluster", "EKS CLUSTER CONFIGURATION"),
    ("oidc", "OIDC PROVIDER - THE IDENTITY BRIDGE"),
    ("iam.role", "IAM ROLE FOR LOAD BALANCER CONTROLLER"),
    ("iam.attached_policies", "IAM ROLE FOR LOAD BALANCER CONTROLLER"),
    ("trust_policy", "IAM ROLE FOR LOAD BALANCER CONTROLLER"),
    ("iam.policy", "IAM PERMISSIONS POLICY"),
    ("namespace", "KUBERNETES SERVICE ACCOUNT"),
    ("service_account", "KUBERNETES SERVICE ACCOUNT"),
    ("subnet", "SUBNET TAGGING"),
    ("controller.pods", "CONTROLLER PODS"),
    ("pod", "CONTROLLER PODS"),
    ("controller", "CONTROLLER DEPLOYMENT"),
    ("ingress_class", "INGRESS CLASS"),
    ("ingress", "INGRESS RESOURCES"),
]


def section_title(check_name: str) -> str:
    for prefix, title in SECTION_TITLES:
        if check_name.startswith(prefix):
            return title
    return "OTHER CHECKS"


class Reporter:
    """Checklist scoring and the final summary for a run."""

    def __init__(self, config: DiagnosticsConfig, progress: ProgressTracker):
        self.config = config
        self.progress = progress

    def print_checks(self, checks: list) -> None:
        """Print checks grouped under their section headers."""
        current = None
        for check in checks:
            title = section_title(check.name)
            if title != current:
                self.progress.section(title)
                current = title
            self.progress.result(check)

    @staticmethod
    def build_checklist(checks: list) -> list[ChecklistResult]:
        return [
            ChecklistResult(index=index, label=item.label, passed=item.evaluate(checks))
            for index, item in enumerate(CHECKLIST, start=1)
        ]

    def finalize(self, report: RunReport) -> RunReport:
        report.checklist = self.build_checklist(report.final_checks)
        return report

    def critical_highlights(self, report: RunReport) -> list[str]:
        final = report.final_checks
        highlights = []
        if any(check.failed and check.name.startswith("trust_policy") for check in final):
            highlights.append("Trust Policy is misconfigured (most common cause of AssumeRoleWithWebIdentity errors)")
        if any(check.failed and check.name.startswith("oidc") for check in final):
            highlights.append("OIDC provider is missing (required for IRSA to work)")
        if any(check.failed and check.name in ("pod.phase", "pod.ready", "controller.pods") for check in final):
            highlights.append("Controller pods are not running or not ready")
        return highlights

    def next_steps(self) -> list[tuple[str, str]]:
        namespace, region = self.config.namespace, self.config.region
        return [
            ("Watch ingress for ALB creation", "kubectl get ingress -A --watch"),
            ("Check controller logs", f"kubectl logs -n {namespace} -l {CONTROLLER_SELECTOR} -f"),
            (
                "Restart controller (if config changed)",
                f"kubectl rollout restart deployment -n {namespace} {CONTROLLER_NAME}",
            ),
            (
                "Verify ALB in AWS console",
                f"aws elbv2 describe-load-balancers --region {region} "
                "--query 'LoadBalancers[?contains(LoadBalancerName, `k8s-`)]'",
            ),
            ("Check ingress events", "kubectl describe ingress -n <namespace> <ingress-name>"),
        ]

    def render(self, report: RunReport) -> None:
        emit = self.progress.emit
        emit()
        emit("=" * 70)
        emit("DIAGNOSTIC SUMMARY & RECOMMENDATIONS")
        emit("=" * 70)
        emit()
        emit("📊 Diagnostic Results:")
        emit(f"  Critical Issues: {report.critical_issues}")
        emit(f"  Warnings: {report.warnings}")
        emit(f"  Fixes Applied: {report.fixes_applied}")
        emit(f"  Backups Created: {report.backups_created}")
        if report.skipped_fixes:
            emit(f"  Fixes Skipped: {len(report.skipped_fixes)}")
        if report.failed_fixes:
            emit(f"  Fixes Failed: {len(report.failed_fixes)}")
        emit()
        emit("📁 Files:")
        emit(f"  Log file: {report.log_path}")
        emit(f"  Backups: {report.backup_dir}")
        emit()

        emit("✅ Configuration Checklist:")
        for item in report.checklist:
            mark = "✓" if item.passed else "✗"
            emit(f"  {item.index:>2}. [{mark}] {item.label}")
        emit()
        emit(f"  Score: {report.checklist_score}/{len(CHECKLIST)}")
        emit()

        if report.healthy:
            emit("✓ Configuration looks good!")
        else:
            emit("✗ Configuration has issues that need attention")

        highlights = self.critical_highlights(report)
        if report.critical_issues > 0 and highlights:
            emit()
            emit("🚨 Critical Issues Found:")
            for line in highlights:
                emit(f"   • {line}")

        emit()
        emit("🔍 Recommended Next Steps:")
        for number, (label, command) in enumerate(self.next_steps(), start=1):
            emit(f"  {number}. {label}:")
            emit(f"     {command}")

        emit()
        emit("If issues persist:")
        emit("  • Review backed up configurations in the backup directory")
        emit("  • Compare trust-policy-original.json with trust-policy-correct.json")
        emit("  • Check controller pod logs saved in the backup directory")
        emit(f"  • Ensure OIDC provider is in region {self.config.region}")

        if report.mode == RemediationMode.DRY_RUN:
            emit()
            emit("ℹ️  This was a DRY RUN. No changes were made.")
            emit(f"   {len(report.dry_run_notices)} change(s) would be applied.")
            emit("   Re-run without DRY_RUN=yes to apply fixes.")


# === SECTION 10: DIAGNOSTIC PIPELINE ===

IdentityConfirmCallback = Callable[[str, str, str], bool]


def console_confirm_identity(cluster_name: str, region: str, account_id: str) -> bool:
    print()
    print("=" * 70)
    print("Please confirm the target of this run:")
    print(f"  Cluster: {cluster_name}")
    print(f"  Region:  {region}")
    print(f"  Account: {account_id}")
    print("=" * 70)
    try:
        reply = input("Is this correct? Type 'yes' to continue: ")
    except EOFError:
        return False
    return reply.strip() == "yes"


class LBCDiagnostics:
    """Runs preflight, collection, evaluation, remediation, verification and reporting."""

    def __init__(
        self,
        config: DiagnosticsConfig,
        progress: Optional[ProgressTracker] = None,
        aws: Optional[AWSClient] = None,
        kube: Optional[KubeClient] = None,
        tooling: Optional[ClusterTooling] = None,
        runner: Optional[CommandRunner] = None,
        backups: Optional[BackupStore] = None,
        confirm: Optional[ConfirmCallback] = None,
        confirm_identity: Optional[IdentityConfirmCallback] = None,
        log_path: Optional[str] = None,
    ):
        self.config = config
        self.progress = progress or ProgressTracker(verbose=config.verbose, quiet=config.quiet)
        self.runner = runner or CommandRunner()
        self.aws = aws or AWSClient(profile=config.profile, region=config.region)
        self.kube = kube or KubeClient(self.runner, context=config.kube_context)
        self.tooling = tooling or ClusterTooling(self.runner)
        self.backups = backups or BackupStore(prepare_output_paths(config.output_dir)[1])
        self.confirm_identity = confirm_identity or console_confirm_identity
        self.log_path = log_path

        self.collector = FactCollector(config, self.aws, self.kube, self.progress)
        self.evaluator = RuleEvaluator(config)
        self.remediator = Remediator(
            config, self.aws, self.kube, self.tooling, self.backups, self.progress, confirm=confirm
        )
        self.reporter = Reporter(config, self.progress)

    def preflight(self) -> PreflightResult:
        """Fatal checks that must pass before anything is collected.

        Raises:
            ToolNotAvailableError, AWSAuthenticationError, ClusterAccessError,
            OperatorAbortError
        """
        self.progress.section("PREFLIGHT: AUTHENTICATION & BASIC ENVIRONMENT CHECKS")

        self.progress.step("Verifying required tools are installed")
        tools = {tool: self.runner.available(tool) for tool in REQUIRED_TOOLS + OPTIONAL_TOOLS}
        missing = [tool for tool in REQUIRED_TOOLS if not tools[tool]]
        if missing:
            raise ToolNotAvailableError(f"Required tool(s) not installed: {', '.join(missing)}")

        self.progress.step("Validating AWS authentication")
        identity = self.aws.get_caller_identity()
        account_id = identity.get("Account", "")
        caller_arn = identity.get("Arn", "")
        self.progress.info(f"Account ID: {account_id}, caller: {caller_arn}")

        self.progress.step("Testing kubectl access to cluster")
        reachable, error = self.kube.cluster_reachable()
        if not reachable:
            raise ClusterAccessError(
                f"kubectl cannot connect to cluster: {error}. Run: aws eks update-kubeconfig "
                f"--name {self.config.cluster_name} --region {self.config.region}"
            )

        self.progress.step("Testing cluster admin permissions")
        try:
            node_count = self.kube.count_nodes()
        except KubectlError as e:
            raise ClusterAccessError(
                f"ACCESS DENIED listing nodes ({e}). You must be added to the aws-auth ConfigMap "
                "or an access entry by the cluster creator"
            )
        self.progress.info(f"Cluster has {node_count} node(s)")

        self._confirm_target(account_id)
        return PreflightResult(account_id=account_id, caller_arn=caller_arn, tools=tools, node_count=node_count)

    def _confirm_target(self, account_id: str) -> None:
        if self.config.dry_run or self.config.assume_yes:
            return
        if not self.confirm_identity(self.config.cluster_name, self.config.region, account_id):
            raise OperatorAbortError("Aborted by user. Update cluster name/region and re-run.")

    def _save_snapshots(self, facts: ClusterFacts, report: RunReport) -> None:
        for filename, content in facts.snapshots.items():
            path = self.backups.save(filename, content)
            report.record_backup(path)
            self.progress.backup(f"{filename} saved")
        for filename, content in facts.artifacts.items():
            self.backups.save(filename, content)

    def _save_proposed_changes(self, checks: list) -> None:
        for check in checks:
            if check.remediation and check.remediation.action == "update_trust_policy":
                self.backups.save("trust-policy-correct.json", check.remediation.params["document"])

    def verify(self, preflight: PreflightResult, report: RunReport) -> RunReport:
        """Re-collect and re-evaluate once when at least one fix was applied."""
        if report.fixes_applied == 0:
            return report

        self.progress.section("VERIFICATION PASS")
        facts = self.collector.collect(preflight)
        checks = self.evaluator.evaluate(facts)
        report.final_checks = checks

        still_failing = [check for check in checks if check.failed]
        if still_failing:
            self.progress.warning(f"{len(still_failing)} check(s) still failing after fixes:")
            for check in still_failing:
                self.progress.result(check)
        else:
            self.progress.info("All checks pass after fixes")
        return report

    def run(self) -> RunReport:
        report = RunReport(
            mode=self.config.remediation_mode,
            log_path=self.log_path,
            backup_dir=self.backups.directory,
            started_at=datetime.now(timezone.utc),
        )

        preflight = self.preflight()
        facts = self.collector.collect(preflight)
        self._save_snapshots(facts, report)

        checks = self.evaluator.evaluate(facts)
        report.record_checks(checks)
        self.reporter.print_checks(checks)
        self._save_proposed_changes(checks)

        report = self.remediator.remediate(checks, facts, report)
        report = self.verify(preflight, report)
        report = self.reporter.finalize(report)
        self.reporter.render(report)
        return report


# === SECTION 11: CLI & MAIN ===


def prepare_output_paths(output_dir: Optional[str] = None) -> tuple[str, str]:
    """Timestamped run log path and backup directory under output_dir (or the temp dir)."""
    base = output_dir or tempfile.gettempdir()
    os.makedirs(base, exist_ok=True)
    timestamp = run_timestamp()
    return (
        os.path.join(base, f"lbc-diagnostics-{timestamp}.log"),
        os.path.join(base, f"lbc-backup-{timestamp}"),
    )


def create_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="EKS Load Balancer Controller Diagnostics - find and fix IRSA, IAM and subnet issues",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Report only, no changes
  %(prog)s --dry-run

  # Interactive run against a specific cluster
  %(prog)s --cluster-name my-cluster --region eu-west-1 --role-name my-lbc-role

  # Apply all fixes without prompting
  %(prog)s --auto-fix --yes

  # Load settings from a file
  %(prog)s --config lbc-diagnostics.yaml

Environment Variables:
  DRY_RUN=yes              Same as --dry-run
  AUTO_FIX=yes             Same as --auto-fix
  LBC_DIAG_CLUSTER         Cluster name
  LBC_DIAG_REGION          AWS region
  LBC_DIAG_PROFILE         AWS profile
  LBC_DIAG_OUTPUT_DIR      Directory for log and backups

Precedence: command line > environment > config file > defaults
        """,
    )

    parser.add_argument("--config", help="Path to a YAML or JSON config file")
    parser.add_argument("--profile", help="AWS profile name")
    parser.add_argument("--region", help=f"AWS region (default: {DEFAULT_REGION})")
    parser.add_argument("--cluster-name", help=f"EKS cluster name (default: {DEFAULT_CLUSTER_NAME})")
    parser.add_argument("--role-name", help=f"IAM role used by the controller (default: {DEFAULT_ROLE_NAME})")
    parser.add_argument("--policy-name", help=f"IAM permissions policy name (default: {DEFAULT_POLICY_NAME})")
    parser.add_argument("--namespace", help=f"Controller namespace (default: {DEFAULT_NAMESPACE})")
    parser.add_argument("--service-account", help=f"Controller ServiceAccount (default: {DEFAULT_SERVICE_ACCOUNT})")
    parser.add_argument("--kube-context", help="kubectl context to use")

    mode = parser.add_argument_group("Remediation mode")
    mode.add_argument("--dry-run", action="store_true", default=None, help="Report what would change, change nothing")
    mode.add_argument("--auto-fix", action="store_true", default=None, help="Apply every available fix without prompting")
    mode.add_argument(
        "--yes",
        dest="assume_yes",
        action="store_true",
        default=None,
        help="Skip the target cluster confirmation prompt",
    )

    output = parser.add_argument_group("Output")
    output.add_argument("--output-dir", help="Directory for the run log and backups (default: system temp dir)")
    output.add_argument("--timezone", help="Timezone for displayed timestamps (default: UTC)")
    output.add_argument("-v", "--verbose", action="store_true", default=None, help="Verbose output")
    output.add_argument("-q", "--quiet", action="store_true", default=None, help="Only show results and summary")
    output.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")

    return parser


def overrides_from_args(args: argparse.Namespace) -> dict:
    keys = (
        "profile",
        "region",
        "cluster_name",
        "role_name",
        "policy_name",
        "namespace",
        "service_account",
        "kube_context",
        "dry_run",
        "auto_fix",
        "assume_yes",
        "output_dir",
        "timezone",
        "verbose",
        "quiet",
    )
    return {key: getattr(args, key, None) for key in keys}


def print_banner(config: DiagnosticsConfig, progress: ProgressTracker, log_path: str, backup_dir: str) -> None:
    started = format_timestamp(datetime.now(timezone.utc), config.timezone)
    progress.emit("=" * 70)
    progress.emit(f"EKS Load Balancer Controller Diagnostics v{VERSION}")
    progress.emit("=" * 70)
    progress.emit(f"Started:         {started}")
    progress.emit(f"Cluster:         {config.cluster_name}")
    progress.emit(f"Region:          {config.region}")
    progress.emit(f"Role:            {config.role_name}")
    progress.emit(f"Policy:          {config.policy_name}")
    progress.emit(f"ServiceAccount:  {config.namespace}/{config.service_account}")
    progress.emit(f"Log file:        {log_path}")
    progress.emit(f"Backup dir:      {backup_dir}")
    progress.emit(RemediationMode.get_label(config.remediation_mode))
    progress.emit("=" * 70)


def main(argv=None):
    parser = create_argument_parser()
    args = parser.parse_args(argv)

    progress = ProgressTracker(verbose=bool(args.verbose), quiet=bool(args.quiet))
    log_handler = None

    try:
        config = DiagnosticsConfig.from_sources(ConfigLoader.load(args.config), overrides_from_args(args))
        progress = ProgressTracker(verbose=config.verbose, quiet=config.quiet)

        log_path, backup_dir = prepare_output_paths(config.output_dir)
        log_handler = progress.attach_log_file(log_path)
        print_banner(config, progress, log_path, backup_dir)

        confirm = deny_all
        if config.remediation_mode == RemediationMode.INTERACTIVE and sys.stdin.isatty():
            confirm = console_confirm

        diagnostics = LBCDiagnostics(
            config,
            progress=progress,
            backups=BackupStore(backup_dir),
            confirm=confirm,
            log_path=log_path,
        )
        diagnostics.run()
        sys.exit(0)

    except (InputValidationError, ConfigurationError) as e:
        progress.error(f"Configuration error: {e}")
        sys.exit(1)
    except ToolNotAvailableError as e:
        progress.error(f"Missing tools: {e}")
        sys.exit(1)
    except AWSAuthenticationError as e:
        progress.error(f"Authentication error: {e}")
        sys.exit(1)
    except ClusterAccessError as e:
        progress.error(f"Cluster access error: {e}")
        sys.exit(1)
    except OperatorAbortError as e:
        progress.error(str(e))
        sys.exit(1)
    except KeyboardInterrupt:
        progress.error("Interrupted by user")
        sys.exit(130)
    except Exception as e:
        progress.error(f"Unexpected error: {e}")
        if progress.verbose:
            import traceback

            traceback.print_exc()
        sys.exit(1)
    finally:
        if log_handler:
            progress.detach_log_file(log_handler)


if __name__ == "__main__":
    main()
