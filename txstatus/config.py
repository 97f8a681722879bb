import os
from dataclasses import dataclass, field
from typing import Dict, Optional

from dotenv import load_dotenv

load_dotenv()


DEFAULT_RPC_URLS = {
    "ethereum": "https://ethereum-rpc.publicnode.com",
    "sepolia": "https://ethereum-sepolia-rpc.publicnode.com",
    "bsc": "https://bsc-dataseed.binance.org",
}


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    """Runtime settings for the reconciliation service.

    Every field has a default so tests can build ``Settings()`` directly and
    override only what they exercise.
    """

    database_url: str = "sqlite:///./txstatus.db"

    poll_interval: float = 2.0
    discovery_max_retries: int = 30
    confirmation_max_retries: int = 10
    confirmation_threshold: int = 1
    network_thresholds: Dict[str, int] = field(default_factory=dict)
    status_check_max_retries: int = 5

    pending_max_age: float = 3600.0
    sweep_batch_size: int = 100

    rpc_urls: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_RPC_URLS))
    rpc_timeout: int = 30

    log_level: str = "INFO"
    log_json: bool = True

    def threshold_for(self, network_name: str) -> int:
        """Confirmations required before a record on ``network_name`` is final."""
        return self.network_thresholds.get(network_name, self.confirmation_threshold)

    @classmethod
    def from_env(cls) -> "Settings":
        rpc_urls = dict(DEFAULT_RPC_URLS)
        thresholds: Dict[str, int] = {}
        for network in DEFAULT_RPC_URLS:
            url = os.getenv(f"{network.upper()}_RPC_URL")
            if url:
                rpc_urls[network] = url
            threshold = os.getenv(f"CONFIRMATION_THRESHOLD_{network.upper()}")
            if threshold:
                thresholds[network] = int(threshold)

        return cls(
            database_url=os.getenv("DATABASE_URL", "sqlite:///./txstatus.db"),
            poll_interval=float(os.getenv("POLL_INTERVAL_SECONDS", "2")),
            discovery_max_retries=int(os.getenv("DISCOVERY_MAX_RETRIES", "30")),
            confirmation_max_retries=int(os.getenv("CONFIRMATION_MAX_RETRIES", "10")),
            confirmation_threshold=int(os.getenv("CONFIRMATION_THRESHOLD", "1")),
            network_thresholds=thresholds,
            status_check_max_retries=int(os.getenv("STATUS_CHECK_MAX_RETRIES", "5")),
            pending_max_age=float(os.getenv("PENDING_MAX_AGE_SECONDS", "3600")),
            sweep_batch_size=int(os.getenv("SWEEP_BATCH_SIZE", "100")),
            rpc_urls=rpc_urls,
            rpc_timeout=int(os.getenv("RPC_TIMEOUT", "30")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_json=_env_bool("LOG_JSON", True),
        )


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings
