"""Build configuration: defaults, config files and CLI overrides."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import yaml

from .cdn import CachingCdn
from .common.http_client import HttpFetcher
from .constants import Constants
from .import_map import ModuleResolver

logger = logging.getLogger(__name__)


def load_config_file(config_path: Optional[str]) -> Dict[str, Any]:
    """Load a YAML (or JSON) configuration file.

    Args:
        config_path: Path to the config file.

    Returns:
        The parsed mapping; empty when the file is missing or unusable.
    """
    if not config_path:
        return {}

    if not os.path.isfile(config_path):
        logger.warning("Config file not found: %s", config_path)
        return {}

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            if config_path.lower().endswith(".json"):
                data = json.load(f)
            else:
                data = yaml.safe_load(f)
    except (OSError, ValueError, yaml.YAMLError) as e:
        logger.warning("Failed to load config %s: %s", config_path, e)
        return {}
    if not isinstance(data, dict):
        logger.warning("Ignoring config %s: expected a mapping", config_path)
        return {}
    return data


@dataclass
class BuildConfig:
    """Settings for one build or types session."""

    cdn_url: str = Constants.CDN_URL_PREFIX
    timeout: float = Constants.REQUEST_TIMEOUT
    retries: int = Constants.HTTP_RETRY_MAX
    retry_delay: float = Constants.HTTP_RETRY_BASE_DELAY_SEC
    import_map: Dict[str, Any] = field(default_factory=dict)
    log_level: str = "INFO"
    log_file: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BuildConfig":
        """Create config from a config file mapping.

        Unknown keys are ignored. ``import_map`` may be an inline mapping or
        the path of a JSON import map file.
        """
        config = cls()
        if data.get("cdn_url"):
            config.cdn_url = str(data["cdn_url"])
        if data.get("timeout") is not None:
            config.timeout = float(data["timeout"])
        if data.get("retries") is not None:
            config.retries = int(data["retries"])
        if data.get("retry_delay") is not None:
            config.retry_delay = float(data["retry_delay"])
        if data.get("log_level"):
            config.log_level = str(data["log_level"]).upper()
        if data.get("log_file"):
            config.log_file = str(data["log_file"])
        import_map = data.get("import_map")
        if isinstance(import_map, dict):
            config.import_map = import_map
        elif isinstance(import_map, str):
            config.import_map = load_config_file(import_map)
        return config

    @classmethod
    def from_args(cls, args: Any) -> "BuildConfig":
        """Create config from CLI arguments.

        Command line values override the config file named by ``--config``,
        which overrides the built-in defaults.

        Args:
            args: Parsed CLI arguments namespace.

        Returns:
            BuildConfig instance.
        """
        config = cls.from_dict(load_config_file(getattr(args, "CONFIG", None)))

        if getattr(args, "CDN_URL", None):
            config.cdn_url = args.CDN_URL
        if getattr(args, "TIMEOUT", None) is not None:
            config.timeout = args.TIMEOUT
        if getattr(args, "RETRIES", None) is not None:
            config.retries = args.RETRIES
        if getattr(args, "IMPORT_MAP", None):
            config.import_map = load_config_file(args.IMPORT_MAP)
        if getattr(args, "LOG_LEVEL", None):
            config.log_level = str(args.LOG_LEVEL).upper()
        if getattr(args, "LOG_FILE", None):
            config.log_file = args.LOG_FILE

        return config

    def create_fetcher(self) -> HttpFetcher:
        return HttpFetcher(timeout=self.timeout, retries=self.retries, retry_delay=self.retry_delay)

    def create_cdn(self, fetcher: Optional[HttpFetcher] = None) -> CachingCdn:
        """Build a CDN cache whose fetcher follows this config.

        The cache closes the fetcher when it is closed.
        """
        return CachingCdn(self.cdn_url, fetcher or self.create_fetcher(), close_fetcher=True)

    def create_module_resolver(self) -> ModuleResolver:
        return ModuleResolver(self.import_map)
