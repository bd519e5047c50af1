"""Configuration loading for the upload pipeline."""

from __future__ import annotations

import json
import os
from pathlib import Path

import keyring

from mediasync.models import UploadConfig

SERVICE_NAME = "mediasync-shopify"
KEY_NAME = "access_token"

DEFAULT_CONFIG_PATH = Path("config/upload_config.json")


def load_upload_config(config_path: Path | None = None) -> UploadConfig:
    """Load upload configuration from JSON, falling back to defaults.

    Reads ``config/upload_config.json`` when *config_path* is ``None``; a
    missing file yields the defaults.  Unrecognized keys are ignored.
    ``SHOPIFY_SHOP_DOMAIN`` and ``SHOPIFY_ACCESS_TOKEN`` override the file,
    and a token still missing after that is read from the system keyring
    (service: ``mediasync-shopify``, key: ``access_token``).

    Args:
        config_path: Optional explicit path to the JSON config.

    Returns:
        UploadConfig populated from file, environment and keyring.
    """
    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH

    data: dict = {}
    if config_path.exists():
        with open(config_path) as f:
            data = json.load(f)

    # Only recognised fields
    field_names = {f.name for f in UploadConfig.__dataclass_fields__.values()}
    kwargs = {k: v for k, v in data.items() if k in field_names}
    if "staged_fallback_domains" in kwargs:
        kwargs["staged_fallback_domains"] = tuple(kwargs["staged_fallback_domains"])

    config = UploadConfig(**kwargs)

    env_domain = os.environ.get("SHOPIFY_SHOP_DOMAIN")
    if env_domain:
        config.shop_domain = env_domain
    env_token = os.environ.get("SHOPIFY_ACCESS_TOKEN")
    if env_token:
        config.access_token = env_token

    if not config.access_token:
        config.access_token = keyring.get_password(SERVICE_NAME, KEY_NAME)

    return config
