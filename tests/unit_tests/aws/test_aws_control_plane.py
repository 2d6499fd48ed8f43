"""Tests for the boto3-backed control plane.

End-to-end behaviour runs against moto; error translation uses botocore's
Stubber so specific error codes can be scripted.
"""
import pytest
import boto3
from botocore.stub import Stubber

from infra_reconciler.aws.clients import AWSClientManager
from infra_reconciler.aws.control_plane import AwsControlPlane
from infra_reconciler.exceptions import RemoteRejection, TransientRemoteError
from infra_reconciler.executor import Executor, OperationStatus
from infra_reconciler.loader import parse_document
from infra_reconciler.models import Action, ResourceKey, ResourceKind, ResourceSpec
from infra_reconciler.planner import PlanBuilder
from infra_reconciler.reconciler import StateReconciler
from infra_reconciler.state import ObservedState

WEB_DOCUMENT = {
    "resources": [
        {"kind": "Registry", "name": "hello-web",
         "attributes": {"image_tag_mutability": "MUTABLE", "scan_on_push": False}},
        {"kind": "Cluster", "name": "c1"},
        {"kind": "TaskDefinition", "name": "t1",
         "attributes": {"image": "nginx:latest", "cpu": 256, "memory": 512, "port": 80,
                        "registry": "hello-web"}},
        {"kind": "Service", "name": "s1",
         "attributes": {"cluster": "c1", "task_definition": "t1", "desired_count": 2}},
    ]
}

CLUSTER_ARN = "arn:aws:ecs:us-east-1:123456789012:cluster/c1"


@pytest.fixture
def aws_plane(aws_settings):
    return AwsControlPlane(AWSClientManager(aws_settings))


def cluster_spec(name="c1"):
    return ResourceSpec(ResourceKind.CLUSTER, name, {})


class TestAgainstMoto:
    def test_first_apply_creates_second_is_noop(self, mocked_aws, aws_plane, aws_settings):
        reconciler = StateReconciler(aws_plane, ObservedState(), settings=aws_settings)
        desired = parse_document(WEB_DOCUMENT)

        first = reconciler.reconcile(desired)
        second = reconciler.reconcile(desired)

        assert first.ok, [r.error for r in first.report.failures]
        assert [op.action for op in first.drifted] == [Action.CREATE] * 4
        assert second.plan.is_noop

        ecs = boto3.client("ecs", region_name="us-east-1")
        service = ecs.describe_services(cluster="c1", services=["s1"])["services"][0]
        assert service["desiredCount"] == 2

    def test_external_scale_is_detected_and_corrected(self, mocked_aws, aws_plane, aws_settings):
        reconciler = StateReconciler(aws_plane, ObservedState(), settings=aws_settings)
        desired = parse_document(WEB_DOCUMENT)
        reconciler.reconcile(desired)

        ecs = boto3.client("ecs", region_name="us-east-1")
        ecs.update_service(cluster="c1", service="s1", desiredCount=4)
        drift = reconciler.detect_drift(desired)

        assert len(drift) == 1
        assert drift[0].key == ResourceKey(ResourceKind.SERVICE, "s1")
        assert drift[0].changes == {"desired_count": (4, 2)}

        assert reconciler.reconcile(desired).ok
        service = ecs.describe_services(cluster="c1", services=["s1"])["services"][0]
        assert service["desiredCount"] == 2

    def test_string_numbers_and_numeric_environment_do_not_drift(self, mocked_aws, aws_plane, aws_settings):
        reconciler = StateReconciler(aws_plane, ObservedState(), settings=aws_settings)
        desired = parse_document([
            {"kind": "TaskDefinition", "name": "t1",
             "attributes": {"image": "nginx:latest", "cpu": "256", "memory": "512",
                            "environment": {"PORT": 8000}}},
        ])

        assert reconciler.reconcile(desired).ok
        second = reconciler.reconcile(desired)

        assert second.plan.is_noop, [op.describe() for op in second.drifted]
        ecs = boto3.client("ecs", region_name="us-east-1")
        assert ecs.describe_task_definition(taskDefinition="t1")["taskDefinition"]["revision"] == 1

    def test_missing_resources_describe_as_none(self, mocked_aws, aws_plane):
        desired = parse_document(WEB_DOCUMENT)

        for spec in desired:
            assert aws_plane.describe(spec) is None


class TestErrorTranslation:
    def test_throttling_is_transient(self, aws_plane):
        with Stubber(aws_plane.clients.ecs) as stubber:
            stubber.add_client_error("describe_clusters", service_error_code="ThrottlingException",
                                     http_status_code=400)
            with pytest.raises(TransientRemoteError) as excinfo:
                aws_plane.describe_cluster(cluster_spec())

        assert excinfo.value.name == "c1"

    def test_invalid_parameter_is_a_rejection(self, aws_plane):
        with Stubber(aws_plane.clients.ecs) as stubber:
            stubber.add_client_error("create_cluster", service_error_code="InvalidParameterException",
                                     http_status_code=400)
            with pytest.raises(RemoteRejection):
                aws_plane.create(cluster_spec())

    def test_inactive_or_missing_cluster_is_none(self, aws_plane):
        with Stubber(aws_plane.clients.ecs) as stubber:
            stubber.add_response(
                "describe_clusters",
                {"clusters": [{"clusterName": "c1", "clusterArn": CLUSTER_ARN, "status": "INACTIVE"}],
                 "failures": []},
                {"clusters": ["c1"], "include": ["SETTINGS"]},
            )
            assert aws_plane.describe_cluster(cluster_spec()) is None

    def test_missing_target_group_is_none(self, aws_plane):
        spec = ResourceSpec(ResourceKind.TARGET_GROUP, "tg1", {"port": 80})
        with Stubber(aws_plane.clients.elbv2) as stubber:
            stubber.add_client_error("describe_target_groups", service_error_code="TargetGroupNotFound",
                                     http_status_code=400)
            assert aws_plane.describe(spec) is None

    def test_service_cluster_cannot_change_in_place(self, aws_plane):
        spec = ResourceSpec(ResourceKind.SERVICE, "s1", {"cluster": "c2", "task_definition": "t1"})

        with pytest.raises(RemoteRejection):
            aws_plane.update(spec, {"cluster": ("c1", "c2")})

    def test_executor_retries_throttled_create(self, aws_plane, aws_settings):
        sleeps = []
        executor = Executor(aws_plane, ObservedState(), settings=aws_settings, base_delay=0.5,
                            sleep=sleeps.append)
        plan = PlanBuilder().build(parse_document([{"kind": "Cluster", "name": "c1"}]))

        with Stubber(aws_plane.clients.ecs) as stubber:
            stubber.add_client_error("create_cluster", service_error_code="ThrottlingException",
                                     http_status_code=400)
            stubber.add_response(
                "create_cluster",
                {"cluster": {"clusterName": "c1", "clusterArn": CLUSTER_ARN, "status": "ACTIVE"}},
            )
            stubber.add_response(
                "describe_clusters",
                {"clusters": [{"clusterName": "c1", "clusterArn": CLUSTER_ARN, "status": "ACTIVE",
                               "settings": []}],
                 "failures": []},
            )
            report = executor.execute(plan)
            stubber.assert_no_pending_responses()

        assert report.ok
        assert report.results[0].status is OperationStatus.SUCCEEDED
        assert report.results[0].attempts == 2
        assert sleeps == [0.5]

    def test_target_group_removed_before_update_is_a_rejection(self, aws_plane):
        spec = ResourceSpec(ResourceKind.TARGET_GROUP, "tg1", {"port": 80, "health_check_path": "/health"})
        with Stubber(aws_plane.clients.elbv2) as stubber:
            stubber.add_client_error("describe_target_groups", service_error_code="TargetGroupNotFound",
                                     http_status_code=400)
            with pytest.raises(RemoteRejection, match="no longer exists"):
                aws_plane.update(spec, {"health_check_path": ("/", "/health")})
