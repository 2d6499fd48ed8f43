"""AWS client management."""
import boto3
import logging
from typing import Any, Dict, Optional

from infra_reconciler.settings import Settings, get_settings

logger = logging.getLogger(__name__)


class AWSClientManager:
    """Creates and caches boto3 clients for one set of settings."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self._clients: Dict[str, Any] = {}

        # Cache commonly used values
        self.region = self.settings.aws_region
        self.endpoint_url = self.settings.aws_endpoint_url
        self.mode = self.settings.deployment_mode

        logger.info(f"Initializing AWSClientManager")
        logger.info(f"  Mode: {self.mode}")
        logger.info(f"  Region: {self.region}")
        logger.info(f"  Endpoint: {self.endpoint_url}")

    def get_client(self, service_name: str) -> Any:
        """Get or create an AWS service client."""
        # Return existing client if already created
        if service_name in self._clients:
            return self._clients[service_name]

        # SSO profiles only make sense against real AWS
        if self.settings.aws_profile and self.mode == 'aws-prod':
            session = boto3.Session(profile_name=self.settings.aws_profile)
            client = session.client(service_name, region_name=self.region)
            self._clients[service_name] = client
            logger.debug(f"Created {service_name} client using profile: {self.settings.aws_profile}")
            return client

        client_kwargs = {
            'region_name': self.region
        }
        if self.settings.aws_access_key_id:
            client_kwargs['aws_access_key_id'] = self.settings.aws_access_key_id
        if self.settings.aws_secret_access_key:
            client_kwargs['aws_secret_access_key'] = self.settings.aws_secret_access_key
        if self.endpoint_url:
            client_kwargs['endpoint_url'] = self.endpoint_url

        try:
            client = boto3.client(service_name, **client_kwargs)
        except Exception as e:
            logger.error(f"Error creating {service_name} client: {str(e)}")
            raise
        self._clients[service_name] = client
        logger.debug(f"Created {service_name} client")
        return client

    @property
    def ecr(self):
        return self.get_client('ecr')

    @property
    def ecs(self):
        return self.get_client('ecs')

    @property
    def elbv2(self):
        return self.get_client('elbv2')

    @property
    def application_autoscaling(self):
        return self.get_client('application-autoscaling')
