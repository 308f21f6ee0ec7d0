import os
import yaml
from pathlib import Path
from .models import AppConfig

# Environment variables win over YAML so secrets can stay out of the config file.
ENV_OVERRIDES = {
    "ABRPACK_S3_BUCKET": "bucket",
    "ABRPACK_S3_REGION": "region",
    "ABRPACK_S3_ENDPOINT_URL": "endpoint_url",
    "ABRPACK_S3_ACCESS_KEY": "access_key",
    "ABRPACK_S3_SECRET_KEY": "secret_key",
    "ABRPACK_CDN_DOMAIN": "cdn_domain",
}


def load_config(config_path: Path) -> AppConfig:
    """Loads YAML config and parses it into AppConfig Pydantic model."""
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path, 'r') as f:
        data = yaml.safe_load(f) or {}

    storage = dict(data.get("storage") or {})
    for env_name, field in ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value:
            storage[field] = value
    if storage:
        data["storage"] = storage

    return AppConfig(**data)
