"""
Environment Configuration

Loads environment variables from .env files and interpolates them into
configuration text, so RPC URLs carrying API keys stay out of config files.
"""

import os
import re
import logging
from typing import Any, Dict, List, Optional, Tuple
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

_VAR_PATTERN = re.compile(r'\${([A-Za-z0-9_]+)}')

class EnvironmentManager:
    """
    Manages environment variables for oracle configuration.

    Features:
    - Loads from .env files
    - Supports environment-specific files (.env.development, .env.production)
    - Interpolates ${VAR} references in config values
    """

    def __init__(self, env_name: Optional[str] = None, load_files: bool = True):
        self.env_name = env_name or os.getenv("ORACLE_ENV", "development")
        if load_files:
            self.load_env_files()

    def load_env_files(self) -> None:
        """Load environment variables from .env files"""
        load_dotenv()

        env_specific_path = f".env.{self.env_name}"
        if os.path.exists(env_specific_path):
            load_dotenv(env_specific_path)
            logger.info(f"Loaded environment specific config from {env_specific_path}")

        local_env_path = ".env.local"
        if os.path.exists(local_env_path):
            load_dotenv(local_env_path)
            logger.info(f"Loaded local environment overrides from {local_env_path}")

    def get(self, key: str, default: Any = None) -> Any:
        """Get environment variable value with optional default"""
        return os.getenv(key, default)

    def interpolate_config(self, config_str: str) -> str:
        """Replace ${VAR_NAME} with the value of environment variable VAR_NAME"""
        def replace_var(match):
            return self.get(match.group(1), '')

        return _VAR_PATTERN.sub(replace_var, config_str)

    def rpc_endpoints(self) -> List[Tuple[str, int]]:
        """Endpoints from ORACLE_RPC_URLS

        Format: comma separated `url` or `url|priority`; without an explicit
        priority the position in the list is used.
        """
        raw = self.get("ORACLE_RPC_URLS", "") or ""
        endpoints: List[Tuple[str, int]] = []
        for position, item in enumerate(part.strip() for part in raw.split(",")):
            if not item:
                continue
            url, _, priority = item.partition("|")
            endpoints.append((self.interpolate_config(url.strip()), int(priority) if priority else position))
        return endpoints

    def overrides(self) -> Dict[str, Any]:
        """Scalar overrides read from the environment"""
        values: Dict[str, Any] = {}
        if self.get("ORACLE_LOG_LEVEL"):
            values["log_level"] = self.get("ORACLE_LOG_LEVEL")
        if self.get("ORACLE_SAMPLING_SEED"):
            values["seed"] = int(self.get("ORACLE_SAMPLING_SEED"))
        return values
