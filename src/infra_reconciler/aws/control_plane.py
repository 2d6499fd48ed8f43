"""
AWS control plane.

Maps each resource kind onto boto3 calls:

- Registry: ECR repositories
- Cluster: ECS clusters
- TaskDefinition: ECS task definitions (an update registers a new revision)
- Service: ECS services, optionally attached to a target group
- TargetGroup: ELBv2 target groups
- ScalingPolicy: Application Auto Scaling target + target-tracking policy

Describe calls translate AWS responses back into the attribute vocabulary of
the desired-state document so that plans can compare like with like.
"""
import logging
from contextlib import contextmanager
from typing import Any, Dict, List, Optional

from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from infra_reconciler.aws.clients import AWSClientManager
from infra_reconciler.control_plane.base import Changes, ControlPlane
from infra_reconciler.exceptions import RemoteRejection, TransientRemoteError
from infra_reconciler.models import ResourceSpec

logger = logging.getLogger(__name__)

THROTTLING_CODES = {
    "Throttling",
    "ThrottlingException",
    "ThrottledException",
    "RequestLimitExceeded",
    "RequestThrottled",
    "TooManyRequestsException",
    "ServiceUnavailable",
    "ServiceUnavailableException",
    "InternalFailure",
    "InternalServerError",
    "ServerException",
}

CONNECTION_ERRORS = (
    EndpointConnectionError,
    ConnectionClosedError,
    ConnectTimeoutError,
    ReadTimeoutError,
)

ECS_NAMESPACE = "ecs"
ECS_SCALABLE_DIMENSION = "ecs:service:DesiredCount"

DEFAULT_TASK_CPU = 256
DEFAULT_TASK_MEMORY = 512
DEFAULT_LAUNCH_TYPE = "FARGATE"
DEFAULT_NETWORK_MODE = "awsvpc"
DEFAULT_SCALING_METRIC = "ECSServiceAverageCPUUtilization"


def _error_code(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Code", "")


def _last_segment(arn: Optional[str]) -> Optional[str]:
    """`arn:aws:ecs:...:cluster/c1` -> `c1`."""
    if not arn:
        return None
    return arn.split("/")[-1]


def _task_family(arn: Optional[str]) -> Optional[str]:
    """`arn:...:task-definition/t1:3` -> `t1`."""
    if not arn:
        return None
    return arn.split("/")[-1].rsplit(":", 1)[0]


def _target_group_name(arn: Optional[str]) -> Optional[str]:
    """`arn:...:targetgroup/tg1/6d0ecf831eec9f09` -> `tg1`."""
    if not arn:
        return None
    parts = arn.split("/")
    return parts[-2] if len(parts) >= 3 else parts[-1]


class AwsControlPlane(ControlPlane):
    """Control plane backed by boto3 clients."""

    name = "aws"

    def __init__(self, clients: Optional[AWSClientManager] = None, app_name: str = "infra-reconciler"):
        self.clients = clients or AWSClientManager()
        self.app_name = app_name

    @contextmanager
    def _remote_call(self, spec: ResourceSpec, operation: str):
        """Translate botocore failures into reconciler errors."""
        try:
            yield
        except ClientError as e:
            code = _error_code(e)
            if code in THROTTLING_CODES:
                logger.warning(f"{operation} for {spec.key} throttled: {code}")
                raise TransientRemoteError(f"{operation}: {e}", kind=spec.kind, name=spec.name) from e
            logger.error(f"{operation} for {spec.key} rejected: {e}")
            raise RemoteRejection(f"{operation}: {e}", kind=spec.kind, name=spec.name) from e
        except CONNECTION_ERRORS as e:
            logger.warning(f"{operation} for {spec.key} failed to connect: {e}")
            raise TransientRemoteError(f"{operation}: {e}", kind=spec.kind, name=spec.name) from e

    def _ecs_tags(self, spec: ResourceSpec) -> List[Dict[str, str]]:
        return [
            {'key': 'Name', 'value': spec.name},
            {'key': 'ManagedBy', 'value': self.app_name},
        ]

    def _aws_tags(self, spec: ResourceSpec) -> List[Dict[str, str]]:
        return [
            {'Key': 'Name', 'Value': spec.name},
            {'Key': 'ManagedBy', 'Value': self.app_name},
        ]

    # Registry (ECR)

    def describe_registry(self, spec: ResourceSpec) -> Optional[Dict[str, Any]]:
        with self._remote_call(spec, "describe_repositories"):
            try:
                response = self.clients.ecr.describe_repositories(repositoryNames=[spec.name])
            except ClientError as e:
                if _error_code(e) == "RepositoryNotFoundException":
                    return None
                raise
        repositories = response.get("repositories", [])
        if not repositories:
            return None
        repo = repositories[0]
        return {
            "image_tag_mutability": repo.get("imageTagMutability"),
            "scan_on_push": repo.get("imageScanningConfiguration", {}).get("scanOnPush", False),
            "repository_uri": repo.get("repositoryUri"),
        }

    def create_registry(self, spec: ResourceSpec) -> Dict[str, Any]:
        attrs = spec.attributes
        with self._remote_call(spec, "create_repository"):
            self.clients.ecr.create_repository(
                repositoryName=spec.name,
                imageTagMutability=attrs.get("image_tag_mutability", "MUTABLE"),
                imageScanningConfiguration={'scanOnPush': bool(attrs.get("scan_on_push", False))},
                tags=self._aws_tags(spec),
            )
        logger.info(f"Created ECR repository: {spec.name}")
        return self.describe_registry(spec) or {}

    def update_registry(self, spec: ResourceSpec, changes: Changes) -> Dict[str, Any]:
        ecr = self.clients.ecr
        with self._remote_call(spec, "update_repository"):
            if "image_tag_mutability" in changes:
                ecr.put_image_tag_mutability(
                    repositoryName=spec.name,
                    imageTagMutability=spec.attributes["image_tag_mutability"],
                )
            if "scan_on_push" in changes:
                ecr.put_image_scanning_configuration(
                    repositoryName=spec.name,
                    imageScanningConfiguration={'scanOnPush': bool(spec.attributes["scan_on_push"])},
                )
        logger.info(f"Updated ECR repository: {spec.name}")
        return self.describe_registry(spec) or {}

    # Cluster (ECS)

    def describe_cluster(self, spec: ResourceSpec) -> Optional[Dict[str, Any]]:
        with self._remote_call(spec, "describe_clusters"):
            response = self.clients.ecs.describe_clusters(clusters=[spec.name], include=['SETTINGS'])
        clusters = [c for c in response.get("clusters", []) if c.get("status") == "ACTIVE"]
        if not clusters:
            return None
        cluster_settings = {s.get("name"): s.get("value") for s in clusters[0].get("settings", [])}
        return {
            "container_insights": cluster_settings.get("containerInsights") == "enabled",
            "cluster_arn": clusters[0].get("clusterArn"),
        }

    def _cluster_settings(self, spec: ResourceSpec) -> List[Dict[str, str]]:
        enabled = bool(spec.attributes.get("container_insights"))
        return [{'name': 'containerInsights', 'value': 'enabled' if enabled else 'disabled'}]

    def create_cluster(self, spec: ResourceSpec) -> Dict[str, Any]:
        kwargs = {'clusterName': spec.name, 'tags': self._ecs_tags(spec)}
        if "container_insights" in spec.attributes:
            kwargs['settings'] = self._cluster_settings(spec)
        with self._remote_call(spec, "create_cluster"):
            self.clients.ecs.create_cluster(**kwargs)
        logger.info(f"Created ECS cluster: {spec.name}")
        return self.describe_cluster(spec) or {}

    def update_cluster(self, spec: ResourceSpec, changes: Changes) -> Dict[str, Any]:
        if "container_insights" in changes:
            with self._remote_call(spec, "update_cluster_settings"):
                self.clients.ecs.update_cluster_settings(
                    cluster=spec.name,
                    settings=self._cluster_settings(spec),
                )
            logger.info(f"Updated ECS cluster settings: {spec.name}")
        return self.describe_cluster(spec) or {}

    # TaskDefinition (ECS)

    def describe_task_definition(self, spec: ResourceSpec) -> Optional[Dict[str, Any]]:
        with self._remote_call(spec, "describe_task_definition"):
            try:
                response = self.clients.ecs.describe_task_definition(taskDefinition=spec.name)
            except ClientError as e:
                # ECS reports an unknown family as a generic client error
                if _error_code(e) in ("ClientException", "InvalidParameterException"):
                    return None
                raise
        task_def = response.get("taskDefinition")
        if not task_def or task_def.get("status") == "INACTIVE":
            return None

        containers = task_def.get("containerDefinitions", [])
        container = containers[0] if containers else {}
        port_mappings = container.get("portMappings", [])
        compatibilities = task_def.get("requiresCompatibilities", [])
        observed = {
            "image": container.get("image"),
            "cpu": int(task_def["cpu"]) if task_def.get("cpu") else None,
            "memory": int(task_def["memory"]) if task_def.get("memory") else None,
            "port": port_mappings[0].get("containerPort") if port_mappings else None,
            "launch_type": compatibilities[0] if compatibilities else None,
            "network_mode": task_def.get("networkMode"),
            "environment": {env["name"]: env.get("value") for env in container.get("environment", [])},
            "execution_role_arn": task_def.get("executionRoleArn"),
            "revision": task_def.get("revision"),
            "task_definition_arn": task_def.get("taskDefinitionArn"),
        }
        # The registry reference only orders operations; ECS does not store it
        if "registry" in spec.attributes:
            observed["registry"] = spec.attributes["registry"]
        return observed

    def _register_task_definition(self, spec: ResourceSpec) -> Dict[str, Any]:
        attrs = spec.attributes
        container = {
            'name': spec.name,
            'image': attrs["image"],
            'essential': True,
        }
        if attrs.get("port"):
            container['portMappings'] = [{'containerPort': int(attrs["port"]), 'protocol': 'tcp'}]
        if attrs.get("environment"):
            container['environment'] = [
                {'name': str(key), 'value': str(value)} for key, value in attrs["environment"].items()
            ]

        task_def = {
            'family': spec.name,
            'networkMode': attrs.get("network_mode", DEFAULT_NETWORK_MODE),
            'requiresCompatibilities': [attrs.get("launch_type", DEFAULT_LAUNCH_TYPE)],
            'cpu': str(attrs.get("cpu", DEFAULT_TASK_CPU)),
            'memory': str(attrs.get("memory", DEFAULT_TASK_MEMORY)),
            'containerDefinitions': [container],
            'tags': self._ecs_tags(spec),
        }
        if attrs.get("execution_role_arn"):
            task_def['executionRoleArn'] = attrs["execution_role_arn"]

        with self._remote_call(spec, "register_task_definition"):
            response = self.clients.ecs.register_task_definition(**task_def)
        arn = response['taskDefinition']['taskDefinitionArn']
        logger.info(f"Registered task definition: {arn}")
        return self.describe_task_definition(spec) or {}

    def create_task_definition(self, spec: ResourceSpec) -> Dict[str, Any]:
        return self._register_task_definition(spec)

    def update_task_definition(self, spec: ResourceSpec, changes: Changes) -> Dict[str, Any]:
        # Task definitions are immutable; an update is a new revision
        return self._register_task_definition(spec)

    # Service (ECS)

    def describe_service(self, spec: ResourceSpec) -> Optional[Dict[str, Any]]:
        cluster = spec.attributes["cluster"]
        with self._remote_call(spec, "describe_services"):
            try:
                response = self.clients.ecs.describe_services(cluster=cluster, services=[spec.name])
            except ClientError as e:
                if _error_code(e) == "ClusterNotFoundException":
                    return None
                raise
        services = [s for s in response.get("services", []) if s.get("status") == "ACTIVE"]
        if not services:
            return None
        service = services[0]

        vpc_config = service.get("networkConfiguration", {}).get("awsvpcConfiguration", {})
        load_balancers = service.get("loadBalancers", [])
        load_balancer = load_balancers[0] if load_balancers else {}
        observed = {
            "cluster": _last_segment(service.get("clusterArn")) or cluster,
            "task_definition": _task_family(service.get("taskDefinition")),
            "desired_count": service.get("desiredCount"),
            "launch_type": service.get("launchType"),
            "subnets": vpc_config.get("subnets"),
            "security_groups": vpc_config.get("securityGroups"),
            "assign_public_ip": vpc_config.get("assignPublicIp") == "ENABLED" if vpc_config else None,
            "target_group": _target_group_name(load_balancer.get("targetGroupArn")),
            "container_port": load_balancer.get("containerPort"),
            "running_count": service.get("runningCount"),
        }
        return observed

    def _network_configuration(self, spec: ResourceSpec) -> Dict[str, Any]:
        attrs = spec.attributes
        vpc_config = {'subnets': list(attrs.get("subnets", []))}
        if attrs.get("security_groups"):
            vpc_config['securityGroups'] = list(attrs["security_groups"])
        vpc_config['assignPublicIp'] = 'ENABLED' if attrs.get("assign_public_ip", True) else 'DISABLED'
        return {'awsvpcConfiguration': vpc_config}

    def _load_balancers(self, spec: ResourceSpec) -> List[Dict[str, Any]]:
        attrs = spec.attributes
        with self._remote_call(spec, "describe_target_groups"):
            response = self.clients.elbv2.describe_target_groups(Names=[attrs["target_group"]])
        target_group = response['TargetGroups'][0]
        return [{
            'targetGroupArn': target_group['TargetGroupArn'],
            'containerName': attrs["task_definition"],
            'containerPort': int(attrs.get("container_port") or target_group['Port']),
        }]

    def create_service(self, spec: ResourceSpec) -> Dict[str, Any]:
        attrs = spec.attributes
        kwargs = {
            'cluster': attrs["cluster"],
            'serviceName': spec.name,
            'taskDefinition': attrs["task_definition"],
            'desiredCount': int(attrs.get("desired_count", 1)),
            'launchType': attrs.get("launch_type", DEFAULT_LAUNCH_TYPE),
            'tags': self._ecs_tags(spec),
        }
        if attrs.get("subnets"):
            kwargs['networkConfiguration'] = self._network_configuration(spec)
        if attrs.get("target_group"):
            kwargs['loadBalancers'] = self._load_balancers(spec)

        with self._remote_call(spec, "create_service"):
            self.clients.ecs.create_service(**kwargs)
        logger.info(f"Created ECS service: {spec.name} in {attrs['cluster']}")
        return self.describe_service(spec) or {}

    def update_service(self, spec: ResourceSpec, changes: Changes) -> Dict[str, Any]:
        attrs = spec.attributes
        if "launch_type" in changes or "cluster" in changes:
            raise RemoteRejection(
                "launch_type and cluster cannot be changed on an existing service",
                kind=spec.kind, name=spec.name,
            )
        kwargs = {
            'cluster': attrs["cluster"],
            'service': spec.name,
            'taskDefinition': attrs["task_definition"],
        }
        if "desired_count" in attrs:
            kwargs['desiredCount'] = int(attrs["desired_count"])
        if {"subnets", "security_groups", "assign_public_ip"} & set(changes):
            kwargs['networkConfiguration'] = self._network_configuration(spec)
        if {"target_group", "container_port"} & set(changes) and attrs.get("target_group"):
            kwargs['loadBalancers'] = self._load_balancers(spec)

        with self._remote_call(spec, "update_service"):
            self.clients.ecs.update_service(**kwargs)
        logger.info(f"Updated ECS service: {spec.name} ({sorted(changes)})")
        return self.describe_service(spec) or {}

    # TargetGroup (ELBv2)

    def describe_target_group(self, spec: ResourceSpec) -> Optional[Dict[str, Any]]:
        with self._remote_call(spec, "describe_target_groups"):
            try:
                response = self.clients.elbv2.describe_target_groups(Names=[spec.name])
            except ClientError as e:
                if _error_code(e) in ("TargetGroupNotFound", "TargetGroupNotFoundException"):
                    return None
                raise
        target_groups = response.get("TargetGroups", [])
        if not target_groups:
            return None
        target_group = target_groups[0]
        return {
            "port": target_group.get("Port"),
            "protocol": target_group.get("Protocol"),
            "vpc_id": target_group.get("VpcId"),
            "target_type": target_group.get("TargetType"),
            "health_check_path": target_group.get("HealthCheckPath"),
            "target_group_arn": target_group.get("TargetGroupArn"),
        }

    def create_target_group(self, spec: ResourceSpec) -> Dict[str, Any]:
        attrs = spec.attributes
        protocol = attrs.get("protocol", "HTTP")
        kwargs = {
            'Name': spec.name,
            'Protocol': protocol,
            'Port': int(attrs["port"]),
            'TargetType': attrs.get("target_type", "ip"),
            'HealthCheckPath': attrs.get("health_check_path", "/"),
            'HealthCheckProtocol': protocol,
            'Tags': self._aws_tags(spec),
        }
        if attrs.get("vpc_id"):
            kwargs['VpcId'] = attrs["vpc_id"]
        with self._remote_call(spec, "create_target_group"):
            self.clients.elbv2.create_target_group(**kwargs)
        logger.info(f"Created target group: {spec.name}")
        return self.describe_target_group(spec) or {}

    def update_target_group(self, spec: ResourceSpec, changes: Changes) -> Dict[str, Any]:
        immutable = sorted(set(changes) - {"health_check_path"})
        if immutable:
            raise RemoteRejection(
                f"target group attribute(s) {', '.join(immutable)} cannot be modified in place",
                kind=spec.kind, name=spec.name,
            )
        current = self.describe_target_group(spec)
        if current is None:
            raise RemoteRejection("target group no longer exists", kind=spec.kind, name=spec.name)
        with self._remote_call(spec, "modify_target_group"):
            self.clients.elbv2.modify_target_group(
                TargetGroupArn=current["target_group_arn"],
                HealthCheckPath=spec.attributes["health_check_path"],
            )
        logger.info(f"Updated target group health check: {spec.name}")
        return self.describe_target_group(spec) or {}

    # ScalingPolicy (Application Auto Scaling)

    @staticmethod
    def _scaling_resource_id(spec: ResourceSpec) -> str:
        return f"service/{spec.attributes['cluster']}/{spec.attributes['service']}"

    def describe_scaling_policy(self, spec: ResourceSpec) -> Optional[Dict[str, Any]]:
        resource_id = self._scaling_resource_id(spec)
        autoscaling = self.clients.application_autoscaling
        with self._remote_call(spec, "describe_scaling_policies"):
            policies = autoscaling.describe_scaling_policies(
                PolicyNames=[spec.name],
                ServiceNamespace=ECS_NAMESPACE,
                ResourceId=resource_id,
                ScalableDimension=ECS_SCALABLE_DIMENSION,
            ).get("ScalingPolicies", [])
            if not policies:
                return None
            targets = autoscaling.describe_scalable_targets(
                ServiceNamespace=ECS_NAMESPACE,
                ResourceIds=[resource_id],
                ScalableDimension=ECS_SCALABLE_DIMENSION,
            ).get("ScalableTargets", [])

        config = policies[0].get("TargetTrackingScalingPolicyConfiguration", {})
        target = targets[0] if targets else {}
        return {
            "service": spec.attributes["service"],
            "cluster": spec.attributes["cluster"],
            "min_capacity": target.get("MinCapacity"),
            "max_capacity": target.get("MaxCapacity"),
            "target_value": config.get("TargetValue"),
            "metric": config.get("PredefinedMetricSpecification", {}).get("PredefinedMetricType"),
            "policy_arn": policies[0].get("PolicyARN"),
        }

    def _put_scaling_policy(self, spec: ResourceSpec) -> Dict[str, Any]:
        attrs = spec.attributes
        resource_id = self._scaling_resource_id(spec)
        autoscaling = self.clients.application_autoscaling
        with self._remote_call(spec, "register_scalable_target"):
            autoscaling.register_scalable_target(
                ServiceNamespace=ECS_NAMESPACE,
                ResourceId=resource_id,
                ScalableDimension=ECS_SCALABLE_DIMENSION,
                MinCapacity=int(attrs.get("min_capacity", 1)),
                MaxCapacity=int(attrs.get("max_capacity", 2)),
            )
        with self._remote_call(spec, "put_scaling_policy"):
            autoscaling.put_scaling_policy(
                PolicyName=spec.name,
                ServiceNamespace=ECS_NAMESPACE,
                ResourceId=resource_id,
                ScalableDimension=ECS_SCALABLE_DIMENSION,
                PolicyType="TargetTrackingScaling",
                TargetTrackingScalingPolicyConfiguration={
                    'TargetValue': float(attrs.get("target_value", 50.0)),
                    'PredefinedMetricSpecification': {
                        'PredefinedMetricType': attrs.get("metric", DEFAULT_SCALING_METRIC),
                    },
                    'ScaleOutCooldown': 60,
                    'ScaleInCooldown': 60,
                },
            )
        logger.info(f"Put scaling policy {spec.name} on {resource_id}")
        return self.describe_scaling_policy(spec) or {}

    def create_scaling_policy(self, spec: ResourceSpec) -> Dict[str, Any]:
        return self._put_scaling_policy(spec)

    def update_scaling_policy(self, spec: ResourceSpec, changes: Changes) -> Dict[str, Any]:
        return self._put_scaling_policy(spec)
