"""Lifecycle workflows: ordered mutate-then-wait steps with compensation.

Each step issues one mutating call, records the identifier it returns and,
if the next step depends on remote convergence, waits for it before moving
on. When a step fails, the compensating actions of the steps that already
completed run in reverse order, so partially created resources are removed
instead of being left behind.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Mapping

from . import remote
from .errors import (
    RemoteCommandError,
    ResourceNotCreatedError,
    ResourceNotFoundError,
    StepFailedError,
)
from .poller import FetchState, Poller
from .providers import DEFAULT_INSTANCE_TYPE, AWSClient
from .types import CallResult, IngressRule, ScalingPolicy
from .utils import log, logger, warn

Handles = dict[str, Any]


@dataclass
class Wait:
    """Convergence wait run after a step's action."""

    handle_key: str
    condition: Mapping[str, Any]
    fetch_state: FetchState


@dataclass
class Step:
    """One mutating call plus its optional wait and compensating action.

    :param action: Called with the handles so far; may return a CallResult
    :param output: Handle key under which to store the result's identifier
    :param wait: Wait to satisfy before the next step runs
    :param compensate: Undoes the action during rollback
    """

    name: str
    action: Callable[[Handles], CallResult | None]
    output: str | None = None
    wait: Wait | None = None
    compensate: Callable[[Handles], None] | None = None


@dataclass
class Workflow:
    name: str
    steps: list[Step]
    poller: Poller
    rollback: bool = True
    results: dict[str, CallResult] = field(default_factory=dict)

    def run(self, handles: Handles | None = None) -> Handles:
        """Run every step in order.

        :param handles: Initial handles threaded into the steps
        :return: Handles collected from the steps
        :raises StepFailedError: If any step, or its wait, fails
        """
        handles = dict(handles or {})
        completed: list[Step] = []
        total = len(self.steps)

        for index, step in enumerate(self.steps, 1):
            log(f"[{self.name}] Step {index}/{total}: {step.name}")
            try:
                result = step.action(handles)
                if isinstance(result, CallResult):
                    self.results[step.name] = result
                    handle = result.unwrap()
                    if step.output:
                        if not handle:
                            raise ResourceNotCreatedError(
                                f"Step '{step.name}' returned no identifier"
                            )
                        handles[step.output] = handle
                completed.append(step)

                if step.wait is not None:
                    self.poller.wait(
                        handles[step.wait.handle_key],
                        step.wait.condition,
                        step.wait.fetch_state,
                    )
            except Exception as e:
                logger.error(f"[{self.name}] Step '{step.name}' failed: {e}")
                if self.rollback:
                    self._unwind(completed, handles)
                raise StepFailedError(self.name, step.name, e) from e

        log(f"[{self.name}] Completed {total} step(s)")
        return handles

    def _unwind(self, completed: list[Step], handles: Handles) -> None:
        to_undo = [s for s in reversed(completed) if s.compensate is not None]
        if not to_undo:
            return
        warn(f"[{self.name}] Rolling back {len(to_undo)} step(s)...")
        for step in to_undo:
            try:
                step.compensate(handles)
                log(f"[{self.name}] Rolled back '{step.name}'")
            except Exception as e:
                warn(f"[{self.name}] Rollback of '{step.name}' failed: {e}")


def timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")


def promote_image(
    client: AWSClient,
    poller: Poller,
    *,
    instance_id: str,
    group_name: str,
    image_name: str,
    launch_configuration_name: str | None = None,
) -> Handles:
    """Bake an AMI from a running instance and roll it out to an auto scaling group.

    The group is doubled so new instances launch from the new image, then
    the old instances are terminated with scaling processes suspended and
    the previous launch configuration is deleted.
    """
    group = client.get_auto_scaling_group(group_name)
    if not group:
        raise ResourceNotFoundError(f"Auto scaling group '{group_name}' not found")
    old_launch_configuration = group["LaunchConfigurationName"]
    base = client.get_launch_configuration(old_launch_configuration)
    if not base:
        raise ResourceNotFoundError(
            f"Launch configuration '{old_launch_configuration}' not found"
        )

    capacity = group["DesiredCapacity"]
    max_size = group["MaxSize"]
    old_instances = [i["InstanceId"] for i in group.get("Instances", [])]
    new_launch_configuration = launch_configuration_name or image_name

    def terminate_old(h: Handles) -> None:
        for old_id in old_instances:
            client.terminate_instance_in_auto_scaling_group(old_id, True)

    steps = [
        Step(
            "create image",
            lambda h: client.create_image(image_name, instance_id),
            output="image_id",
            wait=Wait("image_id", {"state": "available"}, client.fetcher("image", ["state"])),
            compensate=lambda h: client.deregister_image(h["image_id"]),
        ),
        Step(
            "create launch configuration",
            lambda h: client.create_launch_configuration(
                new_launch_configuration, h["image_id"], base
            ),
            output="launch_configuration",
            compensate=lambda h: client.delete_launch_configuration(new_launch_configuration),
        ),
        Step(
            "attach launch configuration",
            lambda h: client.set_launch_configuration(new_launch_configuration, group_name),
            compensate=lambda h: client.set_launch_configuration(
                old_launch_configuration, group_name
            ),
        ),
    ]
    if capacity * 2 > max_size:
        steps.append(Step(
            "raise maximum size",
            lambda h: client.set_group_size(group_name, max_size=capacity * 2),
            compensate=lambda h: client.set_group_size(group_name, max_size=max_size),
        ))
    steps += [
        Step(
            "launch new instances",
            lambda h: client.set_desired_capacity(group_name, capacity * 2),
            wait=Wait(
                "group",
                {"capacity_reached": True},
                client.asg_capacity_fetcher(new_launch_configuration, capacity),
            ),
            compensate=lambda h: client.set_desired_capacity(group_name, capacity),
        ),
        Step(
            "suspend scaling processes",
            lambda h: client.suspend_auto_scaling_processes(group_name),
            compensate=lambda h: client.resume_auto_scaling_processes(group_name),
        ),
        Step("terminate old instances", terminate_old),
        Step(
            "resume scaling processes",
            lambda h: client.resume_auto_scaling_processes(group_name),
        ),
    ]
    if capacity * 2 > max_size:
        steps.append(Step(
            "restore maximum size",
            lambda h: client.set_group_size(group_name, max_size=max_size),
        ))
    steps.append(Step(
        "delete old launch configuration",
        lambda h: client.delete_launch_configuration(old_launch_configuration),
    ))

    return Workflow("promote-image", steps, poller).run(
        {"instance_id": instance_id, "group": group_name}
    )


def bake_image(
    client: AWSClient,
    poller: Poller,
    *,
    base_image_id: str,
    image_name: str,
    key_pair_path: str,
    files_mapping: dict[str, str] | None = None,
    commands: list[str] | None = None,
    key_pair_name: str | None = None,
    subnet_id: str | None = None,
    security_groups: list[str] | None = None,
    instance_type: str = DEFAULT_INSTANCE_TYPE,
    tags: dict[str, str] | None = None,
    ssh_user: str = "ubuntu",
) -> Handles:
    """Build a new AMI by provisioning a temporary instance.

    The temporary instance is launched from base_image_id, receives files and
    setup commands over SSH, is stopped and imaged, and is then terminated.
    """
    instance_fetch = client.fetcher("instance", ["state", "status"])
    state_fetch = client.fetcher("instance", ["state"])

    def resolve_address(h: Handles) -> None:
        instance = client.get_instance(h["instance_id"]) or {}
        address = instance.get("PublicIpAddress") or instance.get("PrivateIpAddress")
        if not address:
            raise ResourceNotCreatedError(f"Instance '{h['instance_id']}' has no IP address")
        h["address"] = address
        remote.wait_for_ssh(address, key_pair_path, poller=poller, user=ssh_user)

    def sync(h: Handles) -> None:
        if files_mapping and not remote.sync_content(
            files_mapping, key_pair_path, h["address"], user=ssh_user
        ):
            raise RemoteCommandError(f"Could not sync files to '{h['address']}'")

    def run_commands(h: Handles) -> None:
        for command in commands or []:
            if not remote.execute_remote_command(
                h["address"], key_pair_path, command, user=ssh_user
            ):
                raise RemoteCommandError(f"Command failed on '{h['address']}': {command}")

    def tag_image(h: Handles) -> None:
        if tags:
            client.create_tags(h["image_id"], tags)

    steps = [
        Step(
            "launch temporary instance",
            lambda h: client.run_instance(
                base_image_id,
                subnet_id=subnet_id,
                security_groups=security_groups,
                key_pair_name=key_pair_name,
                instance_type=instance_type,
                tags={"Name": f"{image_name}-builder"},
            ),
            output="instance_id",
            wait=Wait("instance_id", {"state": "running", "status": "ok"}, instance_fetch),
            compensate=lambda h: client.terminate_instance(h["instance_id"]),
        ),
        Step("wait for ssh", resolve_address),
        Step("sync files", sync),
        Step("run setup commands", run_commands),
        Step(
            "stop instance",
            lambda h: client.stop_instance(h["instance_id"]),
            wait=Wait("instance_id", {"state": "stopped"}, state_fetch),
        ),
        Step(
            "create image",
            lambda h: client.create_image(image_name, h["instance_id"]),
            output="image_id",
            wait=Wait("image_id", {"state": "available"}, client.fetcher("image", ["state"])),
            compensate=lambda h: client.deregister_image(h["image_id"]),
        ),
        Step("tag image", tag_image),
        Step(
            "terminate temporary instance",
            lambda h: client.terminate_instance(h["instance_id"]),
            wait=Wait("instance_id", {"state": "terminated"}, state_fetch),
        ),
    ]
    return Workflow("bake-image", steps, poller).run({"base_image_id": base_image_id})


def backup_volume(
    client: AWSClient,
    poller: Poller,
    *,
    volume_id: str,
    description: str | None = None,
    tags: dict[str, str] | None = None,
    keep: int | None = None,
    wait: bool = False,
) -> Handles:
    """Snapshot a volume and prune its oldest snapshots beyond keep."""
    description = description or f"Backup of {volume_id} at {timestamp()}"

    def prune(h: Handles) -> None:
        h["pruned"] = []
        if keep is None:
            return
        snapshots = sorted(
            client.get_snapshots(volume_id),
            key=lambda s: s["StartTime"],
            reverse=True,
        )
        for snapshot in snapshots[keep:]:
            if snapshot["SnapshotId"] == h["snapshot_id"]:
                continue
            client.delete_snapshot(snapshot["SnapshotId"])
            h["pruned"].append(snapshot["SnapshotId"])

    steps = [
        Step(
            "create snapshot",
            lambda h: client.create_snapshot(volume_id, description, tags),
            output="snapshot_id",
            wait=(
                Wait("snapshot_id", {"state": "completed"}, client.fetcher("snapshot", ["state"]))
                if wait
                else None
            ),
            compensate=lambda h: client.delete_snapshot(h["snapshot_id"]),
        ),
        Step("prune old snapshots", prune),
    ]
    return Workflow("backup-volume", steps, poller).run({"volume_id": volume_id})


def create_web_stack(
    client: AWSClient,
    poller: Poller,
    *,
    name: str,
    image_id: str,
    min_size: int,
    max_size: int,
    instance_type: str = DEFAULT_INSTANCE_TYPE,
    rules: list[IngressRule] | None = None,
    policies: dict[str, ScalingPolicy] | None = None,
    zone: str | None = None,
) -> Handles:
    """Create security group, load balancer, launch configuration and auto scaling group."""
    group_name = f"{name}-web"
    launch_configuration = f"{name}-{timestamp()}"
    if rules is None:
        rules = [
            {"IpProtocol": "tcp", "FromPort": 80, "ToPort": 80, "CidrIp": "0.0.0.0/0"},
        ]

    def create_load_balancer(h: Handles) -> CallResult:
        result = client.create_http_load_balancer(name, zone)
        if result.ok:
            h["log_bucket"] = result.data.get("Bucket")
        return result

    def delete_load_balancer(h: Handles) -> None:
        client.delete_load_balancer(name)
        if h.get("log_bucket"):
            client.delete_bucket(h["log_bucket"])

    def delete_group(h: Handles) -> None:
        client.delete_autoscaling_group(name)
        client.delete_alarms(list(policies or {}))

    steps = [
        Step(
            "create security group",
            lambda h: client.create_security_group(group_name, f"Web servers for {name}", rules),
            output="security_group_id",
            compensate=lambda h: client.delete_security_group(group_name),
        ),
        Step(
            "create load balancer",
            create_load_balancer,
            output="load_balancer",
            compensate=delete_load_balancer,
        ),
        Step(
            "create launch configuration",
            lambda h: client.create_launch_configuration(
                launch_configuration,
                image_id,
                {"InstanceType": instance_type, "SecurityGroups": [group_name]},
            ),
            output="launch_configuration",
            compensate=lambda h: client.delete_launch_configuration(launch_configuration),
        ),
        Step(
            "create auto scaling group",
            lambda h: client.create_autoscaling_group(
                name, min_size, max_size, launch_configuration, name, policies, zone
            ),
            output="group",
            wait=Wait(
                "group",
                {"capacity_reached": True},
                client.asg_capacity_fetcher(launch_configuration, min_size),
            ),
            compensate=delete_group,
        ),
    ]
    return Workflow("create-web-stack", steps, poller).run({"name": name})


def delete_web_stack(
    client: AWSClient,
    poller: Poller,
    *,
    name: str,
    alarms: list[str] | None = None,
) -> Handles:
    """Tear down a stack created by :func:`create_web_stack`.

    Teardown has nothing to compensate, so a failing step simply stops it.
    """
    group = client.get_auto_scaling_group(name)
    launch_configuration = group["LaunchConfigurationName"] if group else None
    load_balancer = client.get_load_balancer(name)
    bucket = None
    if load_balancer:
        access_log = client.describe_load_balancer_attributes(name).get("AccessLog", {})
        bucket = access_log.get("S3BucketName")

    def group_state(group_name: str) -> dict:
        found = client.get_auto_scaling_group(group_name)
        return {"state": "deleted" if found is None else found.get("Status", "active")}

    steps = []
    if group:
        steps.append(Step(
            "delete auto scaling group",
            lambda h: client.delete_autoscaling_group(name),
            wait=Wait("group", {"state": "deleted"}, group_state),
        ))
    steps.append(Step("delete alarms", lambda h: client.delete_alarms(alarms or [])))
    if load_balancer:
        steps.append(Step("delete load balancer", lambda h: client.delete_load_balancer(name)))
    if bucket:
        steps.append(Step("delete log bucket", lambda h: client.delete_bucket(bucket)))
    if launch_configuration:
        steps.append(Step(
            "delete launch configuration",
            lambda h: client.delete_launch_configuration(launch_configuration),
        ))
    steps.append(Step(
        "delete security group",
        lambda h: client.delete_security_group(f"{name}-web"),
    ))
    return Workflow("delete-web-stack", steps, poller, rollback=False).run({"group": name})


def create_database(
    client: AWSClient,
    poller: Poller,
    *,
    name: str,
    engine: str,
    storage: int,
    instance_class: str,
    user: str,
    password: str,
    ingress_groups: list[str] | None = None,
) -> Handles:
    """Create a DB security group and an RDS instance, waiting until it is available."""
    security_group = f"{name}-db"
    rules = [{"EC2SecurityGroupName": group} for group in ingress_groups or []]

    steps = [
        Step(
            "create DB security group",
            lambda h: client.create_rds_security_group(
                security_group, f"Database access for {name}", rules
            ),
            output="db_security_group",
            compensate=lambda h: client.delete_rds_security_group(security_group),
        ),
        Step(
            "create DB instance",
            lambda h: client.create_rds_instance(
                engine, name, storage, instance_class, user, password, [security_group]
            ),
            output="db_instance",
            wait=Wait("db_instance", {"state": "available"}, client.fetcher("db_instance", ["state"])),
            compensate=lambda h: client.delete_rds_instance(name),
        ),
    ]
    return Workflow("create-database", steps, poller).run({"name": name})
