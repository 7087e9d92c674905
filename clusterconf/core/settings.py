"""Runtime settings for config attachment.

Values are read from ``CLUSTERCONF_*`` environment variables (or ``.env``)
and feed the defaults of ConfigInitOptions.
"""

from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Bootstrap and refresh bounds (seconds)
    FETCH_TIMEOUT_S: float = 5.0
    REFRESH_TIMEOUT_S: float = 5.0

    # Per-backend polling cadence (seconds)
    FILE_POLLING_INTERVAL_S: float = 10.0
    ZK_POLLING_INTERVAL_S: float = 1.0
    REMOTE_POLLING_INTERVAL_S: float = 30.0

    # ZooKeeper quorum used when a zk: specifier carries only a path
    ZOOKEEPER_HOSTS: str = "127.0.0.1:2181"
    ZK_SESSION_TIMEOUT_S: float = 10.0

    # ignore|if_present|required
    PAIRING_POLICY: str = "if_present"

    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"  # json|text

    model_config = {
        "env_prefix": "CLUSTERCONF_",
        "env_file": ".env",
        "case_sensitive": False,
        "extra": "ignore",
    }


_settings_cache: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings()
    return _settings_cache


def reset_settings() -> None:
    """Drop the cached settings so the environment is re-read."""
    global _settings_cache
    _settings_cache = None
