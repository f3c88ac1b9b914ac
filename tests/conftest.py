"""Shared test fixtures."""

import boto3
import pytest
from moto import mock_aws

from convergent.aws.client import EC2Client
from convergent.context import RunContext
from convergent.models import RunOptions
from convergent.targets import APITarget, DryRunTarget
from tests.fakes import FakeCloud


@pytest.fixture
def aws_credentials(monkeypatch):
    """Set dummy AWS credentials for moto."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")


@pytest.fixture
def ec2(aws_credentials):
    """A moto-backed EC2Client and the raw boto3 client behind the same mock."""
    with mock_aws():
        yield EC2Client(region="us-east-1"), boto3.client("ec2", region_name="us-east-1")


@pytest.fixture
def cloud():
    return FakeCloud()


@pytest.fixture
def api_ctx(cloud):
    return RunContext(target=APITarget(), cloud=cloud, options=RunOptions(poll_interval=0.01))


@pytest.fixture
def dry_ctx(cloud):
    return RunContext(target=DryRunTarget(), cloud=cloud, options=RunOptions(poll_interval=0.01))
