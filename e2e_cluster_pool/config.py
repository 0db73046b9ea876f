from __future__ import annotations

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Suite settings loaded from environment variables or .env file.

    Priority order for configuration values:
    1. Environment variables
    2. .env file
    3. Default values
    """

    # Azure credentials
    # Used for Service Principal auth, DefaultAzureCredential otherwise
    azure_client_id: str | None = None
    azure_client_secret: str | None = None
    azure_tenant_id: str | None = None
    azure_subscription_id: str | None = None

    # Where the shared test clusters live
    e2e_location: str = "eastus"
    e2e_resource_group: str = "aks-e2e-tests"
    e2e_cluster_name_prefix: str = "e2e-test-cluster"

    # Provisioning
    max_parallel_creations: int = 5
    # Deadline for each long-running operation; None waits indefinitely
    operation_timeout_seconds: float | None = None

    # Cluster preparation
    parameter_extraction_timeout_seconds: float = 600
    parameter_extraction_interval_seconds: float = 10
    debug_daemonset_image: str = "mcr.microsoft.com/cbl-mariner/base/core:2.0"

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",  # ignore extra env vars
    }


settings = Settings()
