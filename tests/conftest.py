"""Shared fixtures for LBC diagnostics tests."""

import pytest
import sys
import os

# Add parent directory to path to import the main module
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from eks_lbc_diagnostics import (  # noqa: E402
    CLUSTER_TAG_PREFIX,
    DEFAULT_CLUSTER_NAME,
    DEFAULT_REGION,
    ELB_ROLE_TAG,
    INGRESS_CLASS_CONTROLLER,
    ClusterFacts,
    DeploymentFacts,
    DiagnosticsConfig,
    IngressClassFacts,
    IngressFacts,
    OIDCProviderFacts,
    PodFacts,
    ServiceAccountFacts,
    SubnetFacts,
    TrustPolicyDocument,
    build_trust_policy,
)

from fakes import OIDC_ISSUER, OIDC_PROVIDER_ARN, OIDC_PROVIDER_ID, ACCOUNT_ID, POLICY_ARN, ROLE_ARN, SUBJECT  # noqa: E402


@pytest.fixture
def config():
    """Default configuration with the cluster identity prompt skipped."""
    return DiagnosticsConfig(assume_yes=True)


@pytest.fixture
def healthy_facts():
    """Facts for a cluster where every rule passes."""
    cluster_tag = f"{CLUSTER_TAG_PREFIX}{DEFAULT_CLUSTER_NAME}"
    return ClusterFacts(
        cluster_name=DEFAULT_CLUSTER_NAME,
        region=DEFAULT_REGION,
        account_id=ACCOUNT_ID,
        caller_arn=f"arn:aws:iam::{ACCOUNT_ID}:user/operator",
        node_count=3,
        tools={"kubectl": True, "eksctl": True, "helm": True},
        cluster_status="ACTIVE",
        cluster_version="1.30",
        vpc_id="vpc-0abc123",
        subnet_ids=["subnet-0aaa", "subnet-0bbb"],
        oidc_issuer=OIDC_ISSUER,
        oidc_provider=OIDCProviderFacts(arn=OIDC_PROVIDER_ARN, registered=True, client_ids=["sts.amazonaws.com"]),
        role_arn=ROLE_ARN,
        trust_policy=TrustPolicyDocument.parse(build_trust_policy(OIDC_PROVIDER_ARN, OIDC_PROVIDER_ID, SUBJECT)),
        attached_policies=[{"PolicyName": "lbc-policy", "PolicyArn": POLICY_ARN}],
        policy_arn=POLICY_ARN,
        policy_version="v1",
        namespace_exists=True,
        service_account=ServiceAccountFacts(
            name="aws-load-balancer-controller",
            namespace="kube-system",
            exists=True,
            role_arn_annotation=ROLE_ARN,
        ),
        subnets=[
            SubnetFacts("subnet-0aaa", {ELB_ROLE_TAG: "1", cluster_tag: "shared"}),
            SubnetFacts("subnet-0bbb", {ELB_ROLE_TAG: "1", cluster_tag: "shared"}),
        ],
        deployment=DeploymentFacts(
            name="aws-load-balancer-controller",
            namespace="kube-system",
            desired_replicas=2,
            ready_replicas=2,
            image="public.ecr.aws/eks/aws-load-balancer-controller:v2.8.1",
            service_account="aws-load-balancer-controller",
        ),
        pods=[
            PodFacts(
                name=f"aws-load-balancer-controller-7d9f-{suffix}",
                phase="Running",
                ready=True,
                restart_count=0,
                logs='{"level":"info","msg":"Starting workers","controller":"ingress"}',
                web_identity_token_file="/var/run/secrets/eks.amazonaws.com/serviceaccount/token",
                role_arn_env=ROLE_ARN,
            )
            for suffix in ("abcde", "fghij")
        ],
        ingress_class=IngressClassFacts(name="alb", controller=INGRESS_CLASS_CONTROLLER),
        ingresses=[
            IngressFacts(
                namespace="default",
                name="web",
                ingress_class="alb",
                hostname="k8s-default-web-1234567890.eu-north-1.elb.amazonaws.com",
            )
        ],
    )


@pytest.fixture
def sample_event():
    """Sample Kubernetes event for testing."""
    return {
        "metadata": {"namespace": "kube-system", "name": "lbc-pod.17a"},
        "type": "Warning",
        "reason": "FailedMount",
        "message": "MountVolume.SetUp failed for volume \"aws-iam-token\"",
        "lastTimestamp": "2026-02-20T10:30:00Z",
        "involvedObject": {"name": "lbc-pod", "namespace": "kube-system"},
    }
