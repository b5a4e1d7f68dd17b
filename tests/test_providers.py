"""Tests for the boto3 client wrappers, mostly against moto."""

from unittest.mock import MagicMock

import boto3
import pytest
from botocore.exceptions import ClientError

from awstools.errors import RemoteStateError, ResourceNotCreatedError
from awstools.poller import Poller
from awstools.providers import AWSClient, is_not_found, to_filters, to_tags
from awstools.types import CallResult

REGION = "us-east-1"


def client_error(code: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, "Operation")


def test_to_tags_and_filters():
    assert to_tags({"Name": "web", "Port": 80}) == [
        {"Key": "Name", "Value": "web"},
        {"Key": "Port", "Value": "80"},
    ]
    assert to_filters({"tag:Role": "web", "state": ["running", "stopped"]}) == [
        {"Name": "tag:Role", "Values": ["web"]},
        {"Name": "state", "Values": ["running", "stopped"]},
    ]


@pytest.mark.parametrize(
    "code, expected",
    [
        ("InvalidInstanceID.NotFound", True),
        ("DBInstanceNotFound", True),
        ("DBSecurityGroupNotFoundFault", True),
        ("Throttling", False),
    ],
)
def test_is_not_found(code, expected):
    assert is_not_found(client_error(code)) is expected


def test_call_result_unwrap():
    assert CallResult.success("i-1").unwrap() == "i-1"
    with pytest.raises(ResourceNotCreatedError):
        CallResult.malformed("no id").unwrap()
    with pytest.raises(RemoteStateError) as exc_info:
        CallResult.remote_error("denied", code="UnauthorizedOperation").unwrap()
    assert exc_info.value.code == "UnauthorizedOperation"
    assert CallResult.remote_error("x").retryable
    assert not CallResult.malformed("x").retryable


def test_key_pair(aws):
    result = aws.create_key_pair("build")
    assert result.ok
    assert result.handle == "build"
    assert "PRIVATE KEY" in result.data["KeyMaterial"]
    assert [k["KeyName"] for k in aws.describe("key_pair")] == ["build"]

    assert aws.delete("key_pair", "build").ok
    assert aws.describe("key_pair") == []


def test_security_group_with_rules(aws):
    rules = [{"IpProtocol": "tcp", "FromPort": 80, "ToPort": 80, "CidrIp": "0.0.0.0/0"}]
    result = aws.create_security_group("shop-web", "Web servers", rules)
    assert result.ok
    assert result.handle.startswith("sg-")

    groups = aws.describe("security_group", {"group-name": "shop-web"})
    assert len(groups) == 1
    assert groups[0]["IpPermissions"][0]["FromPort"] == 80


def test_duplicate_security_group_is_remote_error(aws):
    assert aws.create_security_group("dup", "first").ok
    result = aws.create_security_group("dup", "second")
    assert result.outcome == "remote_error"
    assert result.code == "InvalidGroup.Duplicate"


def test_delete_missing_security_group_is_remote_error(aws):
    result = aws.delete("security_group", "nope")
    assert result.outcome == "remote_error"
    assert result.code.endswith("NotFound")


def test_instance_and_image(aws, ami_id):
    launched = aws.run_instance(ami_id, instance_type="t2.micro", tags={"Name": "builder"})
    assert launched.ok
    instance_id = launched.handle
    assert launched.data["InstanceId"] == instance_id

    assert aws.get_instance_state(instance_id) in ("pending", "running")
    found = aws.describe("instance", {"tag:Name": "builder"})
    assert [i["InstanceId"] for i in found] == [instance_id]

    image = aws.create_image("builder-image", instance_id)
    assert image.ok
    assert image.handle.startswith("ami-")
    assert aws.get_image(image.handle)["Name"] == "builder-image"

    fetch = aws.fetcher("image", ["state"])
    assert fetch(image.handle) == {"state": "available"}

    aws.terminate_instance(instance_id)
    assert aws.get_instance_state(instance_id) in ("shutting-down", "terminated")


def test_missing_resources_sample_as_none(aws):
    assert aws.get_image("ami-12345678") is None
    assert aws.get_instance("i-1234567890abcdef0") is None
    assert aws.fetcher("instance", ["state"])("i-1234567890abcdef0") == {"state": None}


def test_tag_instance(aws, ami_id):
    instance_id = aws.run_instance(ami_id, instance_type="t2.micro").handle
    assert aws.tag(instance_id, {"Role": "web"}).ok
    found = aws.describe("instance", {"tag:Role": "web"})
    assert [i["InstanceId"] for i in found] == [instance_id]


def test_snapshot(aws):
    ec2 = boto3.client("ec2", region_name=REGION)
    volume_id = ec2.create_volume(Size=8, AvailabilityZone=f"{REGION}a")["VolumeId"]

    result = aws.create_snapshot(volume_id, "nightly", {"Backup": "yes"})
    assert result.ok
    assert result.handle.startswith("snap-")
    assert aws.get_snapshot_state(result.handle) is not None

    assert aws.delete("snapshot", result.handle).ok


def test_create_snapshot_error_state():
    ec2 = MagicMock()
    ec2.create_snapshot.return_value = {"SnapshotId": "snap-1", "State": "error"}
    client = AWSClient(MagicMock(), clients={"ec2": ec2})
    result = client.create_snapshot("vol-1", "nightly")
    assert result.outcome == "remote_error"


def test_create_image_without_id_is_malformed():
    ec2 = MagicMock()
    ec2.create_image.return_value = {}
    client = AWSClient(MagicMock(), clients={"ec2": ec2})
    result = client.create_image("web", "i-1")
    assert result.outcome == "malformed"
    assert "Cannot create image" in result.message


def test_launch_configuration_needs_type_and_groups():
    autoscaling = MagicMock()
    client = AWSClient(MagicMock(), clients={"autoscaling": autoscaling})
    result = client.create_launch_configuration("web-new", "ami-1", {"InstanceType": "m3.medium"})
    assert result.outcome == "malformed"
    autoscaling.create_launch_configuration.assert_not_called()


def test_launch_configuration_copies_base(aws, ami_id):
    base = {"InstanceType": "t2.micro", "SecurityGroups": ["default"]}
    assert aws.create_launch_configuration("web-v1", ami_id, base).ok
    lc = aws.get_launch_configuration("web-v1")
    assert lc["ImageId"] == ami_id
    assert lc["InstanceType"] == "t2.micro"
    assert aws.get_launch_configuration("web-v2") is None


def test_load_balancer_with_log_bucket(aws):
    result = aws.create_http_load_balancer("shop")
    assert result.ok
    bucket = result.data["Bucket"]
    assert bucket.startswith("shop-")

    assert aws.get_load_balancer("shop")["LoadBalancerName"] == "shop"
    buckets = [b["Name"] for b in aws.s3.list_buckets()["Buckets"]]
    assert bucket in buckets

    aws.delete_load_balancer("shop")
    aws.delete_bucket(bucket)
    assert aws.get_load_balancer("shop") is None
    assert aws.s3.list_buckets()["Buckets"] == []


def test_asg_capacity_counts_healthy_instances_on_launch_configuration():
    autoscaling = MagicMock()
    autoscaling.describe_auto_scaling_groups.return_value = {
        "AutoScalingGroups": [{
            "AutoScalingGroupName": "web",
            "Instances": [
                {"LaunchConfigurationName": "new", "LifecycleState": "InService", "HealthStatus": "Healthy"},
                {"LaunchConfigurationName": "new", "LifecycleState": "Pending", "HealthStatus": "Healthy"},
                {"LaunchConfigurationName": "new", "LifecycleState": "InService", "HealthStatus": "Unhealthy"},
                {"LaunchConfigurationName": "old", "LifecycleState": "InService", "HealthStatus": "Healthy"},
                {"LaunchConfigurationName": "new", "LifecycleState": "InService", "HealthStatus": "Healthy"},
            ],
        }]
    }
    client = AWSClient(MagicMock(), clients={"autoscaling": autoscaling})
    assert client.asg_capacity_fetcher("new", 2)("web") == {
        "capacity_reached": True,
        "in_service": 2,
    }
    assert client.asg_capacity_fetcher("new", 3)("web") == {
        "capacity_reached": False,
        "in_service": 2,
    }


def test_asg_capacity_overshoot_satisfies_wait(clock):
    healthy = {"LaunchConfigurationName": "new", "LifecycleState": "InService", "HealthStatus": "Healthy"}
    autoscaling = MagicMock()
    autoscaling.describe_auto_scaling_groups.return_value = {
        "AutoScalingGroups": [{"AutoScalingGroupName": "web", "Instances": [healthy] * 3}]
    }
    client = AWSClient(MagicMock(), clients={"autoscaling": autoscaling})
    poller = Poller(interval=1, timeout=5, sleep=clock.sleep, clock=clock)

    iterations = poller.wait(
        "web", {"capacity_reached": True}, client.asg_capacity_fetcher("new", 2)
    )
    assert iterations == 1


def test_instance_fetcher_samples_each_check():
    client = AWSClient(MagicMock())
    client.get_instance_state = MagicMock(return_value="running")
    client.get_instance_status = MagicMock(return_value="initializing")
    fetch = client.fetcher("instance", ["state", "status"])
    assert fetch("i-1") == {"state": "running", "status": "initializing"}
    assert fetch("i-1") == {"state": "running", "status": "initializing"}
    assert client.get_instance_state.call_count == 2
    assert client.get_instance_status.call_count == 2


def test_fetcher_rejects_unknown_check():
    with pytest.raises(ValueError, match="in_service"):
        AWSClient(MagicMock()).fetcher("instance", ["state", "in_service"])


def test_generic_capability_rejects_unknown_kinds():
    client = AWSClient(MagicMock())
    with pytest.raises(ValueError):
        client.create("bucket", {})
    with pytest.raises(ValueError):
        client.set_attribute("sg-1", {}, kind="security_group")


def test_set_attribute_on_instance():
    ec2 = MagicMock()
    client = AWSClient(MagicMock(), clients={"ec2": ec2})
    result = client.set_attribute("i-1", {"InstanceType": "m3.large", "EbsOptimized": {"Value": True}})
    assert result.ok
    ec2.modify_instance_attribute.assert_any_call(InstanceId="i-1", InstanceType={"Value": "m3.large"})
    ec2.modify_instance_attribute.assert_any_call(InstanceId="i-1", EbsOptimized={"Value": True})


def test_mutation_errors_become_remote_error():
    ec2 = MagicMock()
    ec2.terminate_instances.side_effect = client_error("UnauthorizedOperation")
    client = AWSClient(MagicMock(), clients={"ec2": ec2})
    result = client.delete("instance", "i-1")
    assert result.outcome == "remote_error"
    assert result.code == "UnauthorizedOperation"


def test_security_group_removed_when_ingress_fails():
    ec2 = MagicMock()
    ec2.create_security_group.return_value = {"GroupId": "sg-1"}
    ec2.authorize_security_group_ingress.side_effect = client_error("InvalidPermission.Malformed")
    client = AWSClient(MagicMock(), clients={"ec2": ec2})

    rules = [{"IpProtocol": "tcp", "FromPort": 80, "ToPort": 80, "CidrIp": "0.0.0.0/0"}]
    result = client.create_security_group("shop-web", "Web servers", rules)
    assert result.outcome == "remote_error"
    assert result.code == "InvalidPermission.Malformed"
    ec2.delete_security_group.assert_called_once_with(GroupName="shop-web")


@pytest.mark.parametrize(
    "failing_call", ["create_lb_cookie_stickiness_policy", "modify_load_balancer_attributes"]
)
def test_load_balancer_and_bucket_removed_when_configuration_fails(aws, failing_call):
    elb = boto3.client("elb", region_name=REGION)
    setattr(elb, failing_call, MagicMock(side_effect=client_error("ValidationError")))
    aws._clients["elb"] = elb

    result = aws.create_http_load_balancer("shop")
    assert result.outcome == "remote_error"
    assert aws.get_load_balancer("shop") is None
    assert aws.s3.list_buckets()["Buckets"] == []


def test_log_bucket_removed_when_load_balancer_fails():
    elb = MagicMock()
    elb.create_load_balancer.side_effect = client_error("DuplicateLoadBalancerName")
    client = AWSClient(MagicMock(), clients={"elb": elb})
    client._create_log_bucket = MagicMock(return_value="shop-bucket")
    client.delete_bucket = MagicMock()

    result = client.create_http_load_balancer("shop", zone="us-east-1a")
    assert result.code == "DuplicateLoadBalancerName"
    client.delete_bucket.assert_called_once_with("shop-bucket")
    elb.delete_load_balancer.assert_not_called()


POLICIES = {
    "scale-up": {"Adjustment": 1, "Comparison": "GreaterThanOrEqualToThreshold", "Metric": "CPUUtilization", "Threshold": 70},
    "scale-down": {"Adjustment": -1, "Comparison": "LessThanOrEqualToThreshold", "Metric": "CPUUtilization", "Threshold": 20},
}


def test_autoscaling_group_removed_when_alarm_fails():
    autoscaling, cloudwatch = MagicMock(), MagicMock()
    autoscaling.put_scaling_policy.return_value = {"PolicyARN": "arn:policy"}
    cloudwatch.put_metric_alarm.side_effect = [None, client_error("LimitExceeded")]
    client = AWSClient(
        MagicMock(), clients={"autoscaling": autoscaling, "cloudwatch": cloudwatch}
    )

    result = client.create_autoscaling_group("shop", 1, 2, "shop-lc", "shop", POLICIES, "us-east-1a")
    assert result.outcome == "remote_error"
    assert result.code == "LimitExceeded"
    cloudwatch.delete_alarms.assert_called_once_with(AlarmNames=["scale-up"])
    autoscaling.delete_auto_scaling_group.assert_called_once_with(
        AutoScalingGroupName="shop", ForceDelete=True
    )


def test_autoscaling_group_removed_when_policy_has_no_arn():
    autoscaling, cloudwatch = MagicMock(), MagicMock()
    autoscaling.put_scaling_policy.return_value = {}
    client = AWSClient(
        MagicMock(), clients={"autoscaling": autoscaling, "cloudwatch": cloudwatch}
    )

    result = client.create_autoscaling_group("shop", 1, 2, "shop-lc", "shop", POLICIES, "us-east-1a")
    assert result.outcome == "malformed"
    cloudwatch.delete_alarms.assert_not_called()
    autoscaling.delete_auto_scaling_group.assert_called_once_with(
        AutoScalingGroupName="shop", ForceDelete=True
    )


def test_failed_autoscaling_group_create_deletes_nothing():
    autoscaling = MagicMock()
    autoscaling.create_auto_scaling_group.side_effect = client_error("AlreadyExists")
    client = AWSClient(MagicMock(), clients={"autoscaling": autoscaling})

    result = client.create_autoscaling_group("shop", 1, 2, "shop-lc", "shop", POLICIES, "us-east-1a")
    assert result.code == "AlreadyExists"
    autoscaling.delete_auto_scaling_group.assert_not_called()


@pytest.mark.parametrize(
    "owner_id, ingress_error, outcome",
    [
        ("123456789012", client_error("AuthorizationAlreadyExists"), "remote_error"),
        (None, None, "malformed"),
    ],
)
def test_rds_security_group_removed_when_setup_fails(owner_id, ingress_error, outcome):
    rds = MagicMock()
    rds.create_db_security_group.return_value = {
        "DBSecurityGroup": {"DBSecurityGroupName": "shop-db", "OwnerId": owner_id}
    }
    rds.authorize_db_security_group_ingress.side_effect = ingress_error
    client = AWSClient(MagicMock(), clients={"rds": rds})

    result = client.create_rds_security_group(
        "shop-db", "Database", [{"EC2SecurityGroupName": "shop-web"}]
    )
    assert result.outcome == outcome
    rds.delete_db_security_group.assert_called_once_with(DBSecurityGroupName="shop-db")


def test_cleanup_failure_keeps_original_error():
    ec2 = MagicMock()
    ec2.create_security_group.return_value = {"GroupId": "sg-1"}
    ec2.authorize_security_group_ingress.side_effect = client_error("InvalidPermission.Malformed")
    ec2.delete_security_group.side_effect = client_error("DependencyViolation")
    client = AWSClient(MagicMock(), clients={"ec2": ec2})

    result = client.create_security_group("shop-web", "Web", [{"IpProtocol": "tcp"}])
    assert result.code == "InvalidPermission.Malformed"
