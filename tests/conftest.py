"""Shared fixtures: temp lock dirs, fake clocks and moto-backed clients."""

import boto3
import pytest
from moto import mock_aws

from awstools.config import Settings
from awstools.providers import AWSClient

REGION = "us-east-1"


class FakeClock:
    """Monotonic clock advanced only by FakeClock.sleep."""

    def __init__(self):
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def lock_dir(tmp_path):
    d = tmp_path / "locks"
    d.mkdir()
    return d


@pytest.fixture
def settings(monkeypatch, lock_dir):
    for name in ["AWS_PROFILE", "AWS_REGION", "AWSTOOLS_ZONE", "AWSTOOLS_WAIT_TIMEOUT"]:
        monkeypatch.delenv(name, raising=False)
    return Settings(region=REGION, poll_interval=0, lock_dir=str(lock_dir))


@pytest.fixture
def aws_credentials(monkeypatch):
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", REGION)


@pytest.fixture
def aws(aws_credentials, settings):
    """AWSClient talking to moto's in-memory AWS."""
    with mock_aws():
        yield AWSClient(settings)


@pytest.fixture
def ami_id(aws):
    images = boto3.client("ec2", region_name=REGION).describe_images(Owners=["amazon"])["Images"]
    return images[0]["ImageId"]
