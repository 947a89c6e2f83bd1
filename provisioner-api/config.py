"""
Configuration module: all settings from env vars with sensible defaults.
Follows 12-factor app methodology.
"""
import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    # Kubernetes
    KUBECONFIG: str = os.environ.get("KUBECONFIG", "")
    IN_CLUSTER: bool = os.environ.get("IN_CLUSTER", "false").lower() == "true"

    # Store routing
    DOMAIN_SUFFIX: str = os.environ.get("DOMAIN_SUFFIX", "local")
    INGRESS_CLASS: str = os.environ.get("INGRESS_CLASS", "nginx")

    # Workload templates
    MEDUSA_IMAGE: str = os.environ.get("MEDUSA_IMAGE", "medusajs/medusa:latest")
    POSTGRES_IMAGE: str = os.environ.get("POSTGRES_IMAGE", "postgres:15-alpine")
    REDIS_IMAGE: str = os.environ.get("REDIS_IMAGE", "redis:7-alpine")
    STORAGE_CLASS: str = os.environ.get("STORAGE_CLASS", "")
    DB_STORAGE_SIZE: str = os.environ.get("DB_STORAGE_SIZE", "5Gi")

    # Per-namespace resource quota
    QUOTA_CPU_REQUEST: str = os.environ.get("QUOTA_CPU_REQUEST", "2")
    QUOTA_CPU_LIMIT: str = os.environ.get("QUOTA_CPU_LIMIT", "4")
    QUOTA_MEMORY_REQUEST: str = os.environ.get("QUOTA_MEMORY_REQUEST", "4Gi")
    QUOTA_MEMORY_LIMIT: str = os.environ.get("QUOTA_MEMORY_LIMIT", "8Gi")
    QUOTA_STORAGE: str = os.environ.get("QUOTA_STORAGE", "10Gi")
    QUOTA_PVC_COUNT: str = os.environ.get("QUOTA_PVC_COUNT", "5")

    # Platform
    MAX_STORES: int = int(os.environ.get("MAX_STORES", "10"))
    PROVISION_TIMEOUT: float = float(os.environ.get("PROVISION_TIMEOUT", "300"))
    POLL_INTERVAL: float = float(os.environ.get("POLL_INTERVAL", "5"))

    # Rate limiting
    RATE_LIMIT: str = os.environ.get("RATE_LIMIT", "60/minute")

    # Events (optional)
    REDIS_URL: str = os.environ.get("REDIS_URL", "")

    # API
    API_HOST: str = os.environ.get("API_HOST", "0.0.0.0")
    API_PORT: int = int(os.environ.get("API_PORT", "4000"))
    CORS_ORIGINS: str = os.environ.get("CORS_ORIGINS", "*")
    LOG_LEVEL: str = os.environ.get("LOG_LEVEL", "INFO")


settings = Settings()
