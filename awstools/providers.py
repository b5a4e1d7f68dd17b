"""AWS resource client over boto3.

Thin wrappers around EC2, Auto Scaling, ELB, RDS, S3 and CloudWatch calls,
plus the generic create/describe/delete/tag capability and the state
accessors consumed by the convergence poller.
"""

import json
import uuid
from typing import Any, Callable, Iterable

from botocore.exceptions import ClientError

from .config import Settings, get_load_balancer_account_id
from .types import CallResult, IngressRule, ResourceKind, ScalingPolicy
from .utils import debug, log, warn

DEFAULT_INSTANCE_TYPE = "m3.medium"

SCALING_PROCESSES = [
    "Launch",
    "Terminate",
    "HealthCheck",
    "ReplaceUnhealthy",
    "AZRebalance",
    "AlarmNotification",
    "ScheduledActions",
    "AddToLoadBalancer",
]

SERVICES = ["ec2", "autoscaling", "elb", "rds", "s3", "cloudwatch"]


def error_code(e: ClientError) -> str:
    return e.response.get("Error", {}).get("Code", "Unknown")


def is_not_found(e: ClientError) -> bool:
    code = error_code(e)
    return code.endswith(".NotFound") or code.endswith("NotFound") or code.endswith(
        "NotFoundFault"
    )


def to_tags(mapping: dict[str, str]) -> list[dict[str, str]]:
    return [{"Key": key, "Value": str(value)} for key, value in mapping.items()]


def to_filters(filters: dict[str, Any] | None) -> list[dict]:
    """Convert {"name": value_or_list} into the API's Filters list."""
    result = []
    for name, values in (filters or {}).items():
        if isinstance(values, str) or not isinstance(values, Iterable):
            values = [values]
        result.append({"Name": name, "Values": [str(v) for v in values]})
    return result


def _find(items: list[dict] | None, key: str, value: str) -> dict | None:
    return next((item for item in items or [] if item.get(key) == value), None)


class AWSClient:
    """Cloud resource client bound to one Settings context.

    :param settings: Region/profile context
    :param clients: Pre-built service clients by service name (tests)
    """

    def __init__(self, settings: Settings, clients: dict[str, Any] | None = None):
        self.settings = settings
        self._clients: dict[str, Any] = dict(clients or {})

    def client(self, service: str):
        if service not in self._clients:
            self._clients[service] = self.settings.session().client(
                service, region_name=self.settings.region
            )
        return self._clients[service]

    @property
    def ec2(self):
        return self.client("ec2")

    @property
    def autoscaling(self):
        return self.client("autoscaling")

    @property
    def elb(self):
        return self.client("elb")

    @property
    def rds(self):
        return self.client("rds")

    @property
    def s3(self):
        return self.client("s3")

    @property
    def cloudwatch(self):
        return self.client("cloudwatch")

    def _mutate(self, action: str, handle: str | None, call: Callable[[], Any]) -> CallResult:
        """Run a mutating call, turning API errors into a remote_error result."""
        try:
            response = call()
        except ClientError as e:
            warn(f"{action} '{handle}' failed: {error_code(e)}")
            return CallResult.remote_error(str(e), code=error_code(e))
        return CallResult.success(handle, response if isinstance(response, dict) else {})

    def _undo(self, what: str, call: Callable[[], Any]) -> None:
        """Remove a partly created resource, warning if that fails too."""
        try:
            call()
        except ClientError as e:
            warn(f"Could not remove {what} after failed create: {error_code(e)}")

    # Auto scaling

    def get_auto_scaling_group(self, name: str) -> dict | None:
        response = self.autoscaling.describe_auto_scaling_groups(
            AutoScalingGroupNames=[name]
        )
        return _find(response.get("AutoScalingGroups"), "AutoScalingGroupName", name)

    def set_desired_capacity(self, name: str, desired_capacity: int) -> None:
        self.autoscaling.set_desired_capacity(
            AutoScalingGroupName=name,
            DesiredCapacity=desired_capacity,
            HonorCooldown=False,
        )
        log(f"Set desired capacity of '{name}' to {desired_capacity}")

    def set_group_size(
        self, name: str, min_size: int | None = None, max_size: int | None = None
    ) -> None:
        params: dict[str, Any] = {"AutoScalingGroupName": name}
        if min_size is not None:
            params["MinSize"] = min_size
        if max_size is not None:
            params["MaxSize"] = max_size
        self.autoscaling.update_auto_scaling_group(**params)
        log(f"Resized auto scaling group '{name}' (min={min_size}, max={max_size})")

    def get_launch_configuration(self, name: str) -> dict | None:
        response = self.autoscaling.describe_launch_configurations(
            LaunchConfigurationNames=[name]
        )
        return _find(response.get("LaunchConfigurations"), "LaunchConfigurationName", name)

    def create_launch_configuration(
        self, name: str, image_id: str, base: dict
    ) -> CallResult:
        """Create a launch configuration copying type and groups from base.

        :param name: New launch configuration name
        :param image_id: AMI for the new launch configuration
        :param base: Launch configuration to derive InstanceType/SecurityGroups from
        """
        missing = [k for k in ("InstanceType", "SecurityGroups") if k not in base]
        if missing:
            return CallResult.malformed(
                f"Base launch configuration lacks {', '.join(missing)}"
            )
        params = {
            "LaunchConfigurationName": name,
            "ImageId": image_id,
            "InstanceType": base["InstanceType"],
            "SecurityGroups": base["SecurityGroups"],
        }
        if base.get("KeyName"):
            params["KeyName"] = base["KeyName"]
        result = self._mutate(
            "Create launch configuration", name,
            lambda: self.autoscaling.create_launch_configuration(**params),
        )
        if result.ok:
            log(f"Created launch configuration '{name}' ({image_id})")
        return result

    def set_launch_configuration(self, launch_configuration: str, group: str) -> None:
        self.autoscaling.update_auto_scaling_group(
            AutoScalingGroupName=group,
            LaunchConfigurationName=launch_configuration,
        )
        log(f"Auto scaling group '{group}' now uses '{launch_configuration}'")

    def delete_launch_configuration(self, name: str) -> None:
        self.autoscaling.delete_launch_configuration(LaunchConfigurationName=name)
        log(f"Deleted launch configuration '{name}'")

    def terminate_instance_in_auto_scaling_group(
        self, instance_id: str, should_decrement_desired_capacity: bool
    ) -> None:
        self.autoscaling.terminate_instance_in_auto_scaling_group(
            InstanceId=instance_id,
            ShouldDecrementDesiredCapacity=should_decrement_desired_capacity,
        )
        log(f"Terminating '{instance_id}' in its auto scaling group")

    def suspend_auto_scaling_processes(self, name: str) -> None:
        self.autoscaling.suspend_processes(
            AutoScalingGroupName=name, ScalingProcesses=SCALING_PROCESSES
        )
        log(f"Suspended scaling processes on '{name}'")

    def resume_auto_scaling_processes(self, name: str) -> None:
        self.autoscaling.resume_processes(
            AutoScalingGroupName=name, ScalingProcesses=SCALING_PROCESSES
        )
        log(f"Resumed scaling processes on '{name}'")

    def create_autoscaling_group(
        self,
        name: str,
        min_size: int,
        max_size: int,
        launch_configuration: str,
        load_balancer: str,
        policies: dict[str, ScalingPolicy] | None = None,
        zone: str | None = None,
    ) -> CallResult:
        """Create an ELB-health-checked group with alarm-driven scaling policies.

        If a policy or alarm cannot be added, the alarms already made and the
        group itself are deleted before the failure is returned.

        :param policies: Policy name -> adjustment/alarm definition; the alarm
            shares the policy name
        """
        zone = zone or self.settings.zone
        try:
            self.autoscaling.create_auto_scaling_group(
                AutoScalingGroupName=name,
                AvailabilityZones=[zone],
                HealthCheckType="ELB",
                HealthCheckGracePeriod=300,
                LaunchConfigurationName=launch_configuration,
                LoadBalancerNames=[load_balancer],
                MaxSize=max_size,
                MinSize=min_size,
            )
        except ClientError as e:
            return CallResult.remote_error(str(e), code=error_code(e))
        log(f"Created auto scaling group '{name}' in '{zone}'")

        policy_arns: dict[str, str] = {}
        alarms: list[str] = []

        def undo() -> None:
            warn(f"Scaling setup of '{name}' failed, removing group")
            self._undo(f"alarms of '{name}'", lambda: self.delete_alarms(alarms))
            self._undo(f"auto scaling group '{name}'", lambda: self.delete_autoscaling_group(name))

        try:
            for policy_name, policy in (policies or {}).items():
                response = self.autoscaling.put_scaling_policy(
                    AutoScalingGroupName=name,
                    PolicyName=policy_name,
                    AdjustmentType="ChangeInCapacity",
                    ScalingAdjustment=policy["Adjustment"],
                )
                policy_arn = response.get("PolicyARN")
                if not policy_arn:
                    undo()
                    return CallResult.malformed(
                        f"Scaling policy '{policy_name}' returned no ARN",
                        data={"PolicyARNs": policy_arns},
                    )
                policy_arns[policy_name] = policy_arn

                self.cloudwatch.put_metric_alarm(
                    AlarmName=policy_name,
                    AlarmActions=[policy_arn],
                    ComparisonOperator=policy["Comparison"],
                    Dimensions=[{"Name": "AutoScalingGroupName", "Value": name}],
                    EvaluationPeriods=2,
                    MetricName=policy["Metric"],
                    Namespace="AWS/EC2",
                    Period=120,
                    Statistic="Average",
                    Threshold=policy["Threshold"],
                )
                alarms.append(policy_name)
                log(f"Added scaling policy '{policy_name}' ({policy['Metric']})")
        except ClientError as e:
            undo()
            return CallResult.remote_error(str(e), code=error_code(e))

        return CallResult.success(name, {"PolicyARNs": policy_arns})

    def delete_autoscaling_group(self, name: str) -> None:
        self.autoscaling.delete_auto_scaling_group(
            AutoScalingGroupName=name, ForceDelete=True
        )
        log(f"Deleted auto scaling group '{name}'")

    def delete_alarms(self, alarms: list[str]) -> None:
        if alarms:
            self.cloudwatch.delete_alarms(AlarmNames=alarms)
            log(f"Deleted alarms: {', '.join(alarms)}")

    # EC2 images and instances

    def get_image(self, image_id: str) -> dict | None:
        try:
            response = self.ec2.describe_images(ImageIds=[image_id])
        except ClientError as e:
            if is_not_found(e):
                return None
            raise
        return _find(response.get("Images"), "ImageId", image_id)

    def get_image_by_name(self, name: str) -> dict | None:
        response = self.ec2.describe_images(
            Filters=to_filters({"name": name}), Owners=["self"]
        )
        return _find(response.get("Images"), "Name", name)

    def create_image(self, name: str, instance_id: str) -> CallResult:
        """Create an AMI from an instance.

        :return: Result whose handle is the new image id
        """
        try:
            response = self.ec2.create_image(Name=name, InstanceId=instance_id)
        except ClientError as e:
            return CallResult.remote_error(str(e), code=error_code(e))

        image_id = response.get("ImageId")
        if not image_id:
            return CallResult.malformed(
                f"Cannot create image '{name}' from '{instance_id}'", data=response
            )
        log(f"Creating image '{name}' ('{image_id}') from '{instance_id}'")
        return CallResult.success(image_id, response)

    def deregister_image(self, image_id: str) -> None:
        self.ec2.deregister_image(ImageId=image_id)
        log(f"Deregistered image '{image_id}'")

    def run_instance(
        self,
        image_id: str,
        subnet_id: str | None = None,
        security_groups: list[str] | None = None,
        key_pair_name: str | None = None,
        instance_type: str = DEFAULT_INSTANCE_TYPE,
        tags: dict[str, str] | None = None,
    ) -> CallResult:
        """Launch a single instance.

        :return: Result whose handle is the instance id and data the instance
        """
        params: dict[str, Any] = {
            "ImageId": image_id,
            "MinCount": 1,
            "MaxCount": 1,
            "InstanceType": instance_type,
        }
        if subnet_id:
            params["SubnetId"] = subnet_id
        if security_groups:
            params["SecurityGroupIds"] = security_groups
        if key_pair_name:
            params["KeyName"] = key_pair_name
        if tags:
            params["TagSpecifications"] = [
                {"ResourceType": "instance", "Tags": to_tags(tags)}
            ]

        try:
            response = self.ec2.run_instances(**params)
        except ClientError as e:
            return CallResult.remote_error(str(e), code=error_code(e))

        instances = response.get("Instances") or []
        instance = instances[0] if instances else None
        if not instance or not instance.get("InstanceId"):
            return CallResult.malformed("Could not create temporary instance", data=response)

        log(f"Launched instance '{instance['InstanceId']}' from '{image_id}' ({instance_type})")
        return CallResult.success(instance["InstanceId"], instance)

    def get_instances(self, instance_ids: list[str]) -> list[dict]:
        response = self.ec2.describe_instances(InstanceIds=instance_ids)
        return [
            instance
            for reservation in response.get("Reservations", [])
            for instance in reservation.get("Instances", [])
        ]

    def get_instance(self, instance_id: str) -> dict | None:
        try:
            instances = self.get_instances([instance_id])
        except ClientError as e:
            if is_not_found(e):
                return None
            raise
        return instances[0] if instances else None

    def get_instance_state(self, instance_id: str) -> str | None:
        instance = self.get_instance(instance_id)
        return instance["State"]["Name"] if instance else None

    def get_instance_status(self, instance_id: str) -> str | None:
        """:return: Instance status check result (ok, initializing, ...) or None"""
        try:
            response = self.ec2.describe_instance_status(InstanceIds=[instance_id])
        except ClientError as e:
            if is_not_found(e):
                return None
            raise
        status = _find(response.get("InstanceStatuses"), "InstanceId", instance_id)
        return status["InstanceStatus"]["Status"] if status else None

    def create_tags(self, resource_id: str, tags: dict[str, str]) -> None:
        self.ec2.create_tags(Resources=[resource_id], Tags=to_tags(tags))
        debug(f"Tagged '{resource_id}': {tags}")

    def stop_instance(self, instance_id: str) -> None:
        self.ec2.stop_instances(InstanceIds=[instance_id])
        log(f"Stopping instance '{instance_id}'")

    def terminate_instance(self, instance_id: str) -> None:
        self.ec2.terminate_instances(InstanceIds=[instance_id])
        log(f"Terminating instance '{instance_id}'")

    # EBS snapshots

    def create_snapshot(
        self, volume_id: str, description: str, tags: dict[str, str] | None = None
    ) -> CallResult:
        try:
            response = self.ec2.create_snapshot(VolumeId=volume_id, Description=description)
        except ClientError as e:
            return CallResult.remote_error(str(e), code=error_code(e))

        if response.get("State") == "error":
            return CallResult.remote_error(
                f"Cannot create snapshot for volume {volume_id}", data=response
            )
        snapshot_id = response.get("SnapshotId")
        if not snapshot_id:
            return CallResult.malformed(
                f"Snapshot of volume {volume_id} returned no id", data=response
            )

        if tags:
            self.create_tags(snapshot_id, tags)
        log(f"Created snapshot '{snapshot_id}' of '{volume_id}'")
        return CallResult.success(snapshot_id, response)

    def get_snapshots(self, volume_id: str) -> list[dict]:
        response = self.ec2.describe_snapshots(
            Filters=to_filters({"volume-id": volume_id}), OwnerIds=["self"]
        )
        return response.get("Snapshots", [])

    def get_snapshot_state(self, snapshot_id: str) -> str | None:
        try:
            response = self.ec2.describe_snapshots(SnapshotIds=[snapshot_id])
        except ClientError as e:
            if is_not_found(e):
                return None
            raise
        snapshot = _find(response.get("Snapshots"), "SnapshotId", snapshot_id)
        return snapshot["State"] if snapshot else None

    def delete_snapshot(self, snapshot_id: str) -> None:
        self.ec2.delete_snapshot(SnapshotId=snapshot_id)
        log(f"Deleted snapshot '{snapshot_id}'")

    # Security groups and key pairs

    def create_security_group(
        self, name: str, description: str, rules: list[IngressRule] | None = None
    ) -> CallResult:
        try:
            response = self.ec2.create_security_group(GroupName=name, Description=description)
        except ClientError as e:
            return CallResult.remote_error(str(e), code=error_code(e))

        try:
            for rule in rules or []:
                self.ec2.authorize_security_group_ingress(GroupName=name, **rule)
        except ClientError as e:
            warn(f"Ingress rules for '{name}' failed, removing security group")
            self._undo(f"security group '{name}'", lambda: self.delete_security_group(name))
            return CallResult.remote_error(str(e), code=error_code(e))

        group_id = response.get("GroupId")
        if not group_id:
            return CallResult.malformed(f"Security group '{name}' returned no id", data=response)
        log(f"Created security group '{name}' ('{group_id}') with {len(rules or [])} rule(s)")
        return CallResult.success(group_id, response)

    def delete_security_group(self, name: str) -> None:
        self.ec2.delete_security_group(GroupName=name)
        log(f"Deleted security group '{name}'")

    def create_key_pair(self, name: str) -> CallResult:
        """:return: Result whose data holds the private KeyMaterial"""
        try:
            response = self.ec2.create_key_pair(KeyName=name)
        except ClientError as e:
            return CallResult.remote_error(str(e), code=error_code(e))
        if not response.get("KeyMaterial"):
            return CallResult.malformed(f"Key pair '{name}' returned no key material")
        log(f"Created key pair '{name}'")
        return CallResult.success(name, {"KeyMaterial": response["KeyMaterial"]})

    def delete_key_pair(self, name: str) -> None:
        self.ec2.delete_key_pair(KeyName=name)
        log(f"Deleted key pair '{name}'")

    # Load balancers and their log buckets

    def _create_log_bucket(self, name: str, zone: str) -> str:
        bucket = f"{name.lower()}-{uuid.uuid4().hex[:13]}"
        region = zone[:-1]
        params: dict[str, Any] = {"Bucket": bucket}
        if region != "us-east-1":
            params["CreateBucketConfiguration"] = {"LocationConstraint": region}
        self.s3.create_bucket(**params)

        account_id = get_load_balancer_account_id(region)
        if account_id:
            policy = {
                "Id": bucket,
                "Version": "2012-10-17",
                "Statement": [
                    {
                        "Sid": f"Stmt{uuid.uuid4().hex[:13]}",
                        "Action": ["s3:PutObject"],
                        "Effect": "Allow",
                        "Resource": f"arn:aws:s3:::{bucket}/AWSLogs/*",
                        "Principal": {"AWS": [account_id]},
                    }
                ],
            }
            self.s3.put_bucket_policy(Bucket=bucket, Policy=json.dumps(policy))
        else:
            warn(f"No ELB log account known for '{region}', bucket policy not set")
        log(f"Created log bucket '{bucket}'")
        return bucket

    def create_http_load_balancer(self, name: str, zone: str | None = None) -> CallResult:
        """Create an HTTP:80 load balancer with stickiness and access logs.

        The log bucket is created first; if it fails, nothing else is done.
        If the load balancer or its policies fail, whatever was created is
        deleted again, load balancer first.

        :return: Result whose data holds DNSName and Bucket
        """
        zone = zone or self.settings.zone
        try:
            bucket = self._create_log_bucket(name, zone)
        except ClientError as e:
            return CallResult.remote_error(str(e), code=error_code(e))

        try:
            response = self.elb.create_load_balancer(
                LoadBalancerName=name,
                Listeners=[
                    {
                        "InstancePort": 80,
                        "InstanceProtocol": "HTTP",
                        "LoadBalancerPort": 80,
                        "Protocol": "HTTP",
                    }
                ],
                AvailabilityZones=[zone],
            )
        except ClientError as e:
            warn(f"Load balancer '{name}' failed, removing log bucket '{bucket}'")
            self._undo(f"log bucket '{bucket}'", lambda: self.delete_bucket(bucket))
            return CallResult.remote_error(str(e), code=error_code(e))

        try:
            self.elb.create_lb_cookie_stickiness_policy(
                LoadBalancerName=name,
                PolicyName=name,
                CookieExpirationPeriod=3600,
            )
            self.elb.modify_load_balancer_attributes(
                LoadBalancerName=name,
                LoadBalancerAttributes={
                    "AccessLog": {"Enabled": True, "S3BucketName": bucket}
                },
            )
        except ClientError as e:
            warn(f"Configuring load balancer '{name}' failed, removing it and '{bucket}'")
            self._undo(f"load balancer '{name}'", lambda: self.delete_load_balancer(name))
            self._undo(f"log bucket '{bucket}'", lambda: self.delete_bucket(bucket))
            return CallResult.remote_error(str(e), code=error_code(e))

        log(f"Created load balancer '{name}' ({response.get('DNSName', 'no DNS name')})")
        return CallResult.success(name, {"DNSName": response.get("DNSName"), "Bucket": bucket})

    def get_load_balancer(self, name: str) -> dict | None:
        try:
            response = self.elb.describe_load_balancers(LoadBalancerNames=[name])
        except ClientError as e:
            if is_not_found(e):
                return None
            raise
        return _find(response.get("LoadBalancerDescriptions"), "LoadBalancerName", name)

    def describe_load_balancer_attributes(self, name: str) -> dict:
        response = self.elb.describe_load_balancer_attributes(LoadBalancerName=name)
        return response.get("LoadBalancerAttributes", {})

    def delete_load_balancer(self, name: str) -> None:
        self.elb.delete_load_balancer(LoadBalancerName=name)
        log(f"Deleted load balancer '{name}'")

    def delete_bucket(self, bucket: str) -> None:
        """Empty and delete an S3 bucket."""
        paginator = self.s3.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=bucket):
            for obj in page.get("Contents", []):
                self.s3.delete_object(Bucket=bucket, Key=obj["Key"])
        self.s3.delete_bucket(Bucket=bucket)
        log(f"Deleted bucket '{bucket}'")

    # RDS

    def create_rds_security_group(
        self, name: str, description: str, rules: list[dict] | None = None
    ) -> CallResult:
        """Create a DB security group and authorize EC2 groups into it.

        :param rules: Each rule names an EC2SecurityGroupName; the owner id
            is filled in from the new group
        """
        try:
            response = self.rds.create_db_security_group(
                DBSecurityGroupName=name, DBSecurityGroupDescription=description
            )
        except ClientError as e:
            return CallResult.remote_error(str(e), code=error_code(e))

        def undo() -> None:
            warn(f"Setup of DB security group '{name}' failed, removing it")
            self._undo(f"DB security group '{name}'", lambda: self.delete_rds_security_group(name))

        group = response.get("DBSecurityGroup") or {}
        if not group.get("OwnerId"):
            undo()
            return CallResult.malformed(f"DB security group '{name}' returned no owner")
        try:
            for rule in rules or []:
                self.rds.authorize_db_security_group_ingress(
                    DBSecurityGroupName=name,
                    EC2SecurityGroupOwnerId=group["OwnerId"],
                    **rule,
                )
        except ClientError as e:
            undo()
            return CallResult.remote_error(str(e), code=error_code(e))
        log(f"Created DB security group '{name}'")
        return CallResult.success(name, group)

    def delete_rds_security_group(self, name: str) -> None:
        self.rds.delete_db_security_group(DBSecurityGroupName=name)
        log(f"Deleted DB security group '{name}'")

    def create_rds_instance(
        self,
        engine: str,
        name: str,
        storage: int,
        instance_class: str,
        user: str,
        password: str,
        security_groups: list[str],
    ) -> CallResult:
        try:
            response = self.rds.create_db_instance(
                AllocatedStorage=storage,
                DBInstanceClass=instance_class,
                DBInstanceIdentifier=name,
                DBName=name,
                DBSecurityGroups=security_groups,
                Engine=engine,
                MasterUsername=user,
                MasterUserPassword=password,
            )
        except ClientError as e:
            return CallResult.remote_error(str(e), code=error_code(e))

        instance = response.get("DBInstance")
        if not instance or not instance.get("DBInstanceIdentifier"):
            return CallResult.malformed(f"DB instance '{name}' was not created", data=response)
        log(f"Creating DB instance '{name}' ({engine}, {instance_class})")
        return CallResult.success(instance["DBInstanceIdentifier"], instance)

    def get_rds_instance(self, name: str) -> dict | None:
        response = self.rds.describe_db_instances(
            Filters=to_filters({"db-instance-id": name})
        )
        instances = response.get("DBInstances") or []
        return instances[0] if instances else None

    def delete_rds_instance(self, name: str) -> None:
        self.rds.delete_db_instance(DBInstanceIdentifier=name, SkipFinalSnapshot=True)
        log(f"Deleting DB instance '{name}'")

    # Generic capability

    def create(self, kind: ResourceKind, spec: dict) -> CallResult:
        """Create a resource of kind from keyword spec.

        :raises ValueError: If kind cannot be created generically
        """
        creators: dict[str, Callable[..., CallResult]] = {
            "instance": self.run_instance,
            "image": self.create_image,
            "snapshot": self.create_snapshot,
            "security_group": self.create_security_group,
            "key_pair": self.create_key_pair,
            "launch_configuration": self.create_launch_configuration,
            "auto_scaling_group": self.create_autoscaling_group,
            "load_balancer": self.create_http_load_balancer,
            "db_instance": self.create_rds_instance,
            "db_security_group": self.create_rds_security_group,
        }
        if kind not in creators:
            raise ValueError(f"Cannot create resource of kind '{kind}'")
        return creators[kind](**spec)

    def describe(self, kind: ResourceKind, filters: dict[str, Any] | None = None) -> list[dict]:
        """List resources of kind matching filters.

        EC2 and RDS kinds take API filter names (e.g. ``{"tag:Name": "web"}``);
        auto scaling and ELB kinds take ``{"name": [...]}``.
        """
        filters = dict(filters or {})
        if kind == "instance":
            response = self.ec2.describe_instances(Filters=to_filters(filters))
            return [
                i for r in response.get("Reservations", []) for i in r.get("Instances", [])
            ]
        if kind == "image":
            return self.ec2.describe_images(
                Filters=to_filters(filters), Owners=["self"]
            ).get("Images", [])
        if kind == "snapshot":
            return self.ec2.describe_snapshots(
                Filters=to_filters(filters), OwnerIds=["self"]
            ).get("Snapshots", [])
        if kind == "security_group":
            return self.ec2.describe_security_groups(
                Filters=to_filters(filters)
            ).get("SecurityGroups", [])
        if kind == "key_pair":
            return self.ec2.describe_key_pairs(Filters=to_filters(filters)).get("KeyPairs", [])
        if kind == "db_instance":
            return self.rds.describe_db_instances(
                Filters=to_filters(filters)
            ).get("DBInstances", [])

        names = filters.get("name", [])
        names = [names] if isinstance(names, str) else list(names)
        if kind == "auto_scaling_group":
            return self.autoscaling.describe_auto_scaling_groups(
                AutoScalingGroupNames=names
            ).get("AutoScalingGroups", [])
        if kind == "launch_configuration":
            return self.autoscaling.describe_launch_configurations(
                LaunchConfigurationNames=names
            ).get("LaunchConfigurations", [])
        if kind == "load_balancer":
            params = {"LoadBalancerNames": names} if names else {}
            return self.elb.describe_load_balancers(**params).get(
                "LoadBalancerDescriptions", []
            )
        raise ValueError(f"Cannot describe resources of kind '{kind}'")

    def delete(self, kind: ResourceKind, handle: str) -> CallResult:
        deleters: dict[str, Callable[[str], None]] = {
            "instance": self.terminate_instance,
            "image": self.deregister_image,
            "snapshot": self.delete_snapshot,
            "security_group": self.delete_security_group,
            "key_pair": self.delete_key_pair,
            "launch_configuration": self.delete_launch_configuration,
            "auto_scaling_group": self.delete_autoscaling_group,
            "load_balancer": self.delete_load_balancer,
            "db_instance": self.delete_rds_instance,
            "db_security_group": self.delete_rds_security_group,
            "bucket": self.delete_bucket,
        }
        if kind not in deleters:
            raise ValueError(f"Cannot delete resource of kind '{kind}'")
        return self._mutate(f"Delete {kind}", handle, lambda: deleters[kind](handle))

    def tag(self, handle: str, mapping: dict[str, str]) -> CallResult:
        return self._mutate("Tag", handle, lambda: self.create_tags(handle, mapping))

    def set_attribute(
        self, handle: str, mapping: dict[str, Any], kind: ResourceKind = "instance"
    ) -> CallResult:
        """Modify attributes of an instance or load balancer.

        Instance attributes are applied one call each, as the API requires.
        """
        if kind == "instance":
            def call():
                for name, value in mapping.items():
                    if not isinstance(value, dict):
                        value = {"Value": value}
                    self.ec2.modify_instance_attribute(InstanceId=handle, **{name: value})
        elif kind == "load_balancer":
            def call():
                self.elb.modify_load_balancer_attributes(
                    LoadBalancerName=handle, LoadBalancerAttributes=mapping
                )
        else:
            raise ValueError(f"Cannot set attributes on resources of kind '{kind}'")
        return self._mutate("Set attributes on", handle, call)

    # State accessors for the poller

    def _samplers(self) -> dict[tuple[str, str], Callable[[str], Any]]:
        return {
            ("instance", "state"): self.get_instance_state,
            ("instance", "status"): self.get_instance_status,
            ("image", "state"): lambda h: (self.get_image(h) or {}).get("State"),
            ("snapshot", "state"): self.get_snapshot_state,
            ("db_instance", "state"): lambda h: (self.get_rds_instance(h) or {}).get(
                "DBInstanceStatus"
            ),
        }

    def fetcher(self, kind: ResourceKind, checks: Iterable[str]) -> Callable[[str], dict]:
        """Build a fetch function sampling only the requested checks.

        :raises ValueError: If a check is not available for kind
        """
        samplers = self._samplers()
        checks = list(checks)
        unknown = [c for c in checks if (kind, c) not in samplers]
        if unknown:
            raise ValueError(f"Unknown check(s) for '{kind}': {', '.join(unknown)}")

        def fetch(handle: str) -> dict:
            return {check: samplers[(kind, check)](handle) for check in checks}

        return fetch

    def asg_capacity_fetcher(
        self, launch_configuration: str, target: int
    ) -> Callable[[str], dict]:
        """Fetch function counting healthy InService instances on a launch configuration.

        ``capacity_reached`` is True once at least target instances qualify,
        so a group that overshoots still satisfies the wait.
        """

        def fetch(group_name: str) -> dict:
            group = self.get_auto_scaling_group(group_name) or {}
            in_service = sum(
                1
                for i in group.get("Instances", [])
                if i.get("LaunchConfigurationName") == launch_configuration
                and i.get("LifecycleState") == "InService"
                and i.get("HealthStatus") == "Healthy"
            )
            return {"capacity_reached": in_service >= target, "in_service": in_service}

        return fetch
