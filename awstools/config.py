"""Runtime settings: AWS profile/region resolution and polling defaults."""

import configparser
import os
import threading
from dataclasses import dataclass, field

import boto3
from dotenv import load_dotenv

from .poller import Poller
from .utils import log

AWS_DEFAULT_REGION = "us-west-2"

REGIONS = [
    "us-east-1",
    "us-east-2",
    "us-west-1",
    "us-west-2",
    "ca-central-1",
    "eu-west-1",
    "eu-west-2",
    "eu-central-1",
    "ap-northeast-1",
    "ap-northeast-2",
    "ap-southeast-1",
    "ap-southeast-2",
    "ap-south-1",
    "sa-east-1",
    "us-gov-west-1",
    "cn-north-1",
]

# Account that writes classic ELB access logs, per region.
ELB_ACCOUNT_IDS = {
    "us-east-1": "127311923021",
    "us-east-2": "033677994240",
    "us-west-1": "027434742980",
    "us-west-2": "797873946194",
    "ca-central-1": "985666609251",
    "eu-west-1": "156460612806",
    "eu-central-1": "054676820928",
    "eu-west-2": "652711504416",
    "ap-northeast-1": "582318560864",
    "ap-northeast-2": "600734575887",
    "ap-southeast-1": "114774131450",
    "ap-southeast-2": "783225319266",
    "ap-south-1": "718504428378",
    "sa-east-1": "507241528517",
    "us-gov-west-1": "048591011584",
    "cn-north-1": "638102146993",
}


def get_load_balancer_account_id(region: str) -> str | None:
    """:return: ELB log-delivery account for region, or None if unknown"""
    return ELB_ACCOUNT_IDS.get(region)


def normalize_region(region: str) -> str:
    """Convert an availability zone like us-west-2a to its region.

    :raises ValueError: If the region is not known
    """
    if region in REGIONS:
        return region
    if region and region[-1].isalpha() and region[:-1] in REGIONS:
        log(f"Converted availability zone '{region}' to region '{region[:-1]}'")
        return region[:-1]
    raise ValueError(
        f"Invalid AWS region: '{region}'\n"
        f"Valid AWS regions: '{', '.join(REGIONS[:6])}', ..."
    )


def available_profiles() -> set[str]:
    """Profile names found in ~/.aws/credentials and ~/.aws/config."""
    profiles = set()
    for path in ["~/.aws/credentials", "~/.aws/config"]:
        path = os.path.expanduser(path)
        if os.path.exists(path):
            cfg = configparser.ConfigParser()
            cfg.read(path)
            for section in cfg.sections():
                if section.startswith("profile "):
                    profiles.add(section[8:])
                else:
                    profiles.add(section)
    return profiles


def _float_env(name: str, default: float | None) -> float | None:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"{name} must be a number, got '{value}'") from None


@dataclass
class Settings:
    """Explicit context passed to every operation instead of global clients."""

    region: str = AWS_DEFAULT_REGION
    zone: str | None = None
    profile_name: str | None = None
    poll_interval: float = 1.0
    wait_timeout: float | None = None
    backoff: float = 1.0
    max_interval: float | None = None
    lock_dir: str | None = None
    ssh_user: str = "ubuntu"
    _session: boto3.Session | None = field(default=None, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def __post_init__(self) -> None:
        self.region = normalize_region(self.region)
        if not self.zone:
            self.zone = f"{self.region}a"

    @classmethod
    def from_env(
        cls, profile: str | None = None, region: str | None = None
    ) -> "Settings":
        """Load settings from .env, the environment and ~/.aws config files.

        Does not validate credentials; the first API call does that.

        :param profile: Explicit AWS profile name (overrides AWS_PROFILE)
        :param region: Explicit region or zone (overrides AWS_REGION)
        """
        load_dotenv()

        profile_name = profile or os.getenv("AWS_PROFILE")
        if profile_name and profile_name not in available_profiles():
            log(f"AWS profile '{profile_name}' not found, using default credential chain...")
            profile_name = None

        return cls(
            region=region or os.getenv("AWS_REGION") or AWS_DEFAULT_REGION,
            zone=os.getenv("AWSTOOLS_ZONE") or None,
            profile_name=profile_name,
            poll_interval=_float_env("AWSTOOLS_POLL_INTERVAL", 1.0),
            wait_timeout=_float_env("AWSTOOLS_WAIT_TIMEOUT", None),
            backoff=_float_env("AWSTOOLS_POLL_BACKOFF", 1.0),
            max_interval=_float_env("AWSTOOLS_POLL_MAX_INTERVAL", None),
            lock_dir=os.getenv("AWSTOOLS_LOCK_DIR") or None,
            ssh_user=os.getenv("AWSTOOLS_SSH_USER", "ubuntu"),
        )

    def session(self) -> boto3.Session:
        """Get the boto3 session, creating it on first use."""
        with self._lock:
            if self._session is None:
                kwargs = {"region_name": self.region}
                if self.profile_name:
                    kwargs["profile_name"] = self.profile_name
                self._session = boto3.Session(**kwargs)
            return self._session

    def poller(self, cancel: threading.Event | None = None, **overrides) -> Poller:
        """Build a Poller using these settings' interval, timeout and backoff."""
        options = {
            "interval": self.poll_interval,
            "timeout": self.wait_timeout,
            "backoff": self.backoff,
            "max_interval": self.max_interval,
            "cancel": cancel,
        }
        options.update(overrides)
        return Poller(**options)
