# src/infra_reconciler/settings.py
from typing import Optional, Dict, Any
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache

FAILURE_POLICIES = ("halt", "continue")
DEPLOYMENT_MODES = ("local", "aws-mock", "aws-prod")


class Settings(BaseSettings):
    """
    Single source of truth for all reconciler settings.

    Configuration precedence:
    1. Environment variables (highest priority)
    2. .env file (if exists)
    3. Default values in this class (lowest priority)

    Usage:
        from infra_reconciler.settings import get_settings
        settings = get_settings()
        workers = settings.max_workers
    """

    # Application Settings
    app_name: str = Field(
        default="infra-reconciler",
        description="Name used to tag managed resources"
    )

    # Deployment Mode
    deployment_mode: str = Field(
        default="local",
        description="Control plane: local, aws-mock, or aws-prod"
    )

    # AWS Core Settings
    aws_region: str = Field(
        default="us-east-1",
        alias="AWS_DEFAULT_REGION"
    )

    aws_access_key_id: Optional[str] = Field(
        default=None,
        alias="AWS_ACCESS_KEY_ID"
    )

    aws_secret_access_key: Optional[str] = Field(
        default=None,
        alias="AWS_SECRET_ACCESS_KEY"
    )

    aws_endpoint_url: Optional[str] = Field(
        default=None,
        alias="AWS_ENDPOINT_URL"
    )

    aws_profile: Optional[str] = Field(
        default=None,
        alias="AWS_PROFILE"
    )

    # Executor
    max_workers: int = Field(
        default=4,
        ge=1,
        description="Worker pool size for independent operations"
    )

    max_retries: int = Field(
        default=3,
        ge=0,
        description="Retries per operation after a transient remote error"
    )

    retry_base_delay: float = Field(
        default=1.0,
        ge=0,
        description="Delay before the first retry in seconds"
    )

    retry_backoff: float = Field(
        default=2.0,
        ge=1.0,
        description="Multiplier applied to the delay after each retry"
    )

    failure_policy: str = Field(
        default="halt",
        description="halt: stop after the first failure; continue: keep running independent branches"
    )

    # Reconciler
    reconcile_interval: float = Field(
        default=60.0,
        gt=0,
        description="Seconds between periodic reconciliation passes"
    )

    # Storage Configuration
    state_file: str = Field(
        default=".reconciler_state.json",
        description="Observed state cache file"
    )

    local_store_file: str = Field(
        default=".local_control_plane.json",
        description="Backing file of the local control plane"
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level"
    )

    @property
    def uses_aws(self) -> bool:
        return self.deployment_mode in ["aws-mock", "aws-prod"]

    @field_validator('deployment_mode', mode='before')
    @classmethod
    def normalize_deployment_mode(cls, v):
        """Normalize deployment mode aliases."""
        if v:
            mode_mapping = {
                "local-dev": "local",
                "mock": "aws-mock",
                "aws": "aws-prod",
            }
            v = str(v).lower()
            return mode_mapping.get(v, v)
        return v

    @field_validator('deployment_mode')
    @classmethod
    def validate_deployment_mode(cls, v):
        """Validate deployment mode is one of the allowed values."""
        if v not in DEPLOYMENT_MODES:
            raise ValueError(f"Invalid deployment_mode: {v}. Must be one of {list(DEPLOYMENT_MODES)}")
        return v

    @field_validator('failure_policy')
    @classmethod
    def validate_failure_policy(cls, v):
        v = str(v).lower()
        if v not in FAILURE_POLICIES:
            raise ValueError(f"Invalid failure_policy: {v}. Must be one of {list(FAILURE_POLICIES)}")
        return v

    @field_validator('log_level')
    @classmethod
    def normalize_log_level(cls, v):
        return str(v).upper()

    @model_validator(mode="after")
    def set_mock_endpoint_and_credentials(self):
        """Point aws-mock at a local moto server unless told otherwise."""
        if self.deployment_mode == "aws-mock":
            if self.aws_endpoint_url is None:
                self.aws_endpoint_url = "http://localhost:5000"
            if self.aws_access_key_id is None:
                self.aws_access_key_id = "mock"
            if self.aws_secret_access_key is None:
                self.aws_secret_access_key = "mock"
        return self

    def as_dict(self) -> Dict[str, Any]:
        """Settings safe to print (no secrets)."""
        return {
            'deployment_mode': self.deployment_mode,
            'aws_region': self.aws_region,
            'aws_endpoint_url': self.aws_endpoint_url,
            'max_workers': self.max_workers,
            'max_retries': self.max_retries,
            'retry_base_delay': self.retry_base_delay,
            'retry_backoff': self.retry_backoff,
            'failure_policy': self.failure_policy,
            'reconcile_interval': self.reconcile_interval,
            'state_file': self.state_file,
            'local_store_file': self.local_store_file,
            'log_level': self.log_level,
        }

    model_config = SettingsConfigDict(
        case_sensitive=False,
        env_file=(".env", ".env.local", ".env.aws-mock", ".env.aws-prod"),
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    This ensures we only create one Settings instance per process.
    """
    return Settings()
