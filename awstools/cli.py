#!/usr/bin/env python3
"""AWS lifecycle tools: bake and roll out images, back up volumes, build stacks.

Prerequisites: AWS credentials (profile or environment), rsync and ssh on PATH.

Usage: awstools <noun> <verb> [options]

Examples:
    awstools instance wait i-0abc --state running --status ok
    awstools image promote i-0abc web-asg --image-name web-20240101
    awstools snapshot backup vol-0abc --keep 7
    awstools stack create shop ami-0abc --min-size 2 --max-size 6
"""

import os
import sys
from typing import Callable

import cyclopts
from botocore.exceptions import ClientError
from rich import print

from . import lifecycle, remote
from .config import Settings
from .errors import AWSToolsError
from .lock import ProcessLock
from .providers import DEFAULT_INSTANCE_TYPE, AWSClient, error_code
from .types import ScalingPolicy
from .utils import error, log, setup_logging, warn

# Exit status when another process already runs the same job
ALREADY_RUNNING_EXIT = 3

app = cyclopts.App(
    name="awstools", help="AWS image, snapshot and stack lifecycle tools", sort_key=None
)

instance_app = cyclopts.App(name="instance", help="Wait on and provision instances", sort_key=1)
image_app = cyclopts.App(name="image", help="Bake and promote machine images", sort_key=2)
snapshot_app = cyclopts.App(name="snapshot", help="Back up EBS volumes", sort_key=3)
stack_app = cyclopts.App(name="stack", help="Create and delete auto-scaled web stacks", sort_key=4)
db_app = cyclopts.App(name="db", help="Create RDS databases", sort_key=5)

app.command(instance_app)
app.command(image_app)
app.command(snapshot_app)
app.command(stack_app)
app.command(db_app)


def _client(profile: str | None, region: str | None) -> tuple[Settings, AWSClient]:
    try:
        settings = Settings.from_env(profile=profile, region=region)
    except ValueError as e:
        error(str(e))
    return settings, AWSClient(settings)


def _run_guarded(job_name: str, settings: Settings, func: Callable[[], dict]) -> dict | None:
    """Run func under the job's process lock, converting failures to exit 1.

    Exits with ALREADY_RUNNING_EXIT when another process holds the job.
    """
    try:
        with ProcessLock(job_name, settings.lock_dir) as lock:
            if lock.already_running:
                warn(f"Job '{job_name}' is already running, exiting")
                sys.exit(ALREADY_RUNNING_EXIT)
            return func()
    except AWSToolsError as e:
        error(str(e))
    except ClientError as e:
        error(f"AWS error ({error_code(e)}): {e}")


def _parse_pairs(items: list[str] | tuple[str, ...] | None, sep: str, what: str) -> dict[str, str]:
    pairs = {}
    for item in items or []:
        key, found, value = item.partition(sep)
        if not found or not key:
            error(f"Invalid {what} '{item}', expected KEY{sep}VALUE")
        pairs[key] = value
    return pairs


@instance_app.command(name="wait")
def wait_instance(
    instance_id: str,
    *,
    state: str | None = "running",
    status: str | None = None,
    timeout: float | None = None,
    profile: str | None = None,
    region: str | None = None,
):
    """Block until an instance reaches a state and/or status.

    :param state: Expected instance state (running, stopped, ...)
    :param status: Expected status check (ok, impaired, ...)
    :param timeout: Give up after this many seconds
    """
    settings, client = _client(profile, region)
    condition = {}
    if state:
        condition["state"] = state
    if status:
        condition["status"] = status
    if not condition:
        error("Nothing to wait for: give --state and/or --status")

    overrides = {"timeout": timeout} if timeout is not None else {}
    try:
        poller = settings.poller(**overrides)
        iterations = poller.wait(instance_id, condition, client.fetcher("instance", list(condition)))
    except AWSToolsError as e:
        error(str(e))
    except ClientError as e:
        error(f"AWS error ({error_code(e)}): {e}")
    log(f"'{instance_id}' ready after {iterations} poll(s)")


@instance_app.command(name="sync")
def sync_instance(
    address: str,
    key_pair_path: str,
    *mappings: str,
    user: str | None = None,
):
    """Rsync local paths to an instance.

    :param mappings: LOCAL:REMOTE path pairs, synced in order
    :param user: SSH user (default: AWSTOOLS_SSH_USER or ubuntu)
    """
    settings, _ = _client(None, None)
    files_mapping = _parse_pairs(mappings, ":", "mapping")
    if not files_mapping:
        error("No LOCAL:REMOTE mappings given")

    def run():
        if not remote.sync_content(
            files_mapping, key_pair_path, address, user=user or settings.ssh_user
        ):
            error(f"Sync to '{address}' failed")
        return {}

    _run_guarded(f"sync-{address}", settings, run)


@instance_app.command(name="exec")
def exec_instance(address: str, key_pair_path: str, command: str, *, user: str | None = None):
    """Run a command on an instance over SSH."""
    settings, _ = _client(None, None)

    def run():
        if not remote.execute_remote_command(
            address, key_pair_path, command, user=user or settings.ssh_user
        ):
            error(f"Command failed on '{address}'")
        return {}

    _run_guarded(f"exec-{address}", settings, run)


@image_app.command(name="bake")
def bake_image(
    base_image_id: str,
    image_name: str,
    *,
    key_pair_path: str,
    key_pair_name: str | None = None,
    file: list[str] | None = None,
    command: list[str] | None = None,
    subnet_id: str | None = None,
    security_group: list[str] | None = None,
    instance_type: str = DEFAULT_INSTANCE_TYPE,
    tag: list[str] | None = None,
    profile: str | None = None,
    region: str | None = None,
):
    """Build an image from a base image on a temporary instance.

    :param file: LOCAL:REMOTE path pair to sync (repeatable)
    :param command: Setup command run after syncing (repeatable)
    :param tag: KEY=VALUE tag for the new image (repeatable)
    """
    settings, client = _client(profile, region)
    files_mapping = _parse_pairs(file, ":", "mapping")
    tags = _parse_pairs(tag, "=", "tag")

    handles = _run_guarded(
        f"bake-{image_name}",
        settings,
        lambda: lifecycle.bake_image(
            client,
            settings.poller(),
            base_image_id=base_image_id,
            image_name=image_name,
            key_pair_path=key_pair_path,
            files_mapping=files_mapping,
            commands=command,
            key_pair_name=key_pair_name,
            subnet_id=subnet_id,
            security_groups=security_group,
            instance_type=instance_type,
            tags=tags,
            ssh_user=settings.ssh_user,
        ),
    )
    if handles:
        print(f"  Image: {handles['image_id']}")


@image_app.command(name="promote")
def promote_image(
    instance_id: str,
    group_name: str,
    *,
    image_name: str,
    launch_configuration_name: str | None = None,
    profile: str | None = None,
    region: str | None = None,
):
    """Image a running instance and roll the image out to an auto scaling group.

    :param launch_configuration_name: Name of the new launch configuration
        (default: the image name)
    """
    settings, client = _client(profile, region)
    handles = _run_guarded(
        f"promote-{group_name}",
        settings,
        lambda: lifecycle.promote_image(
            client,
            settings.poller(),
            instance_id=instance_id,
            group_name=group_name,
            image_name=image_name,
            launch_configuration_name=launch_configuration_name,
        ),
    )
    if handles:
        print(f"  Image: {handles['image_id']}")
        print(f"  Launch configuration: {handles['launch_configuration']}")


@snapshot_app.command(name="backup")
def backup_volume(
    volume_id: str,
    *,
    keep: int | None = None,
    description: str | None = None,
    wait: bool = False,
    tag: list[str] | None = None,
    profile: str | None = None,
    region: str | None = None,
):
    """Snapshot a volume, keeping at most --keep snapshots.

    :param wait: Wait until the snapshot completes
    :param tag: KEY=VALUE tag for the snapshot (repeatable)
    """
    settings, client = _client(profile, region)
    if keep is not None and keep < 1:
        error("--keep must be at least 1")
    tags = _parse_pairs(tag, "=", "tag")

    handles = _run_guarded(
        f"backup-{volume_id}",
        settings,
        lambda: lifecycle.backup_volume(
            client,
            settings.poller(),
            volume_id=volume_id,
            description=description,
            tags=tags,
            keep=keep,
            wait=wait,
        ),
    )
    if handles:
        print(f"  Snapshot: {handles['snapshot_id']}")
        if handles.get("pruned"):
            print(f"  Pruned: {', '.join(handles['pruned'])}")


def scaling_policies(name: str, cpu_high: float, cpu_low: float) -> dict[str, ScalingPolicy]:
    """Scale-out and scale-in policies driven by average CPU."""
    return {
        f"{name}-scale-up": {
            "Adjustment": 1,
            "Comparison": "GreaterThanOrEqualToThreshold",
            "Metric": "CPUUtilization",
            "Threshold": cpu_high,
        },
        f"{name}-scale-down": {
            "Adjustment": -1,
            "Comparison": "LessThanOrEqualToThreshold",
            "Metric": "CPUUtilization",
            "Threshold": cpu_low,
        },
    }


@stack_app.command(name="create")
def create_stack(
    name: str,
    image_id: str,
    *,
    min_size: int = 1,
    max_size: int = 4,
    instance_type: str = DEFAULT_INSTANCE_TYPE,
    cpu_high: float = 70.0,
    cpu_low: float = 20.0,
    zone: str | None = None,
    profile: str | None = None,
    region: str | None = None,
):
    """Create a load-balanced, auto-scaled web stack.

    :param cpu_high: Average CPU percent that adds an instance
    :param cpu_low: Average CPU percent that removes an instance
    """
    settings, client = _client(profile, region)
    if min_size > max_size:
        error(f"--min-size ({min_size}) is larger than --max-size ({max_size})")

    handles = _run_guarded(
        f"stack-{name}",
        settings,
        lambda: lifecycle.create_web_stack(
            client,
            settings.poller(),
            name=name,
            image_id=image_id,
            min_size=min_size,
            max_size=max_size,
            instance_type=instance_type,
            policies=scaling_policies(name, cpu_high, cpu_low),
            zone=zone,
        ),
    )
    if handles:
        load_balancer = client.get_load_balancer(name) or {}
        print(f"  Load balancer: {load_balancer.get('DNSName', name)}")
        print(f"  Auto scaling group: {handles['group']}")


@stack_app.command(name="delete")
def delete_stack(
    name: str,
    *,
    force: bool = False,
    profile: str | None = None,
    region: str | None = None,
):
    """Delete a web stack and everything it created."""
    settings, client = _client(profile, region)

    if not force:
        confirm = input(f"Delete stack '{name}'? (yes/no): ")
        if confirm != "yes":
            log("Cancelled")
            return

    _run_guarded(
        f"stack-{name}",
        settings,
        lambda: lifecycle.delete_web_stack(
            client,
            settings.poller(),
            name=name,
            alarms=list(scaling_policies(name, 0, 0)),
        ),
    )


@db_app.command(name="create")
def create_db(
    name: str,
    *,
    user: str,
    password: str | None = None,
    engine: str = "mysql",
    storage: int = 5,
    instance_class: str = "db.m1.small",
    ingress_group: list[str] | None = None,
    profile: str | None = None,
    region: str | None = None,
):
    """Create an RDS instance with its own DB security group.

    :param password: Master password (default: AWSTOOLS_DB_PASSWORD)
    :param ingress_group: EC2 security group allowed to connect (repeatable)
    """
    settings, client = _client(profile, region)
    password = password or os.getenv("AWSTOOLS_DB_PASSWORD")
    if not password:
        error("No password: give --password or set AWSTOOLS_DB_PASSWORD")

    handles = _run_guarded(
        f"db-{name}",
        settings,
        lambda: lifecycle.create_database(
            client,
            settings.poller(),
            name=name,
            engine=engine,
            storage=storage,
            instance_class=instance_class,
            user=user,
            password=password,
            ingress_groups=ingress_group,
        ),
    )
    if handles:
        instance = client.get_rds_instance(name) or {}
        endpoint = instance.get("Endpoint", {})
        print(f"  Endpoint: {endpoint.get('Address', '?')}:{endpoint.get('Port', '?')}")


def main():
    setup_logging(os.getenv("AWSTOOLS_LOG_LEVEL", "INFO"))
    app()


if __name__ == "__main__":
    main()
