"""
Centralized configuration for blescope.

Provides dataclass-based configuration with defaults.
Supports environment variable overrides for deployment flexibility.
"""
import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .logging_setup import get_logger

logger = get_logger(__name__)

# ── Protocol constants ────────────────────────────────────────────────

DEFAULT_MTU = 247              # Largest ATT MTU that fits one LL packet with DLE
MIN_MTU = 23                   # ATT default, always granted
MAX_MTU = 517
DEFAULT_SCAN_TIMEOUT = 10.0


@dataclass
class BLEConfig:
    """Bluetooth stack configuration."""

    mode: str = "bleak"            # "bleak" | "disabled"
    adapter: str | None = None     # e.g. "hci0"; None lets the stack choose
    mtu: int = DEFAULT_MTU
    scan_timeout: float = DEFAULT_SCAN_TIMEOUT
    connect_timeout: float = 20.0
    adapter_poll_interval: float = 2.0


@dataclass
class APIConfig:
    """HTTP/SSE service configuration."""

    host: str = "127.0.0.1"
    port: int = 8082
    api_key: str = ""              # empty disables authentication
    cors_origins: list[str] = field(default_factory=lambda: ["*"])


@dataclass
class Config:
    """Main blescope configuration."""

    ble: BLEConfig = field(default_factory=BLEConfig)
    api: APIConfig = field(default_factory=APIConfig)

    _raw: dict = field(default_factory=dict, repr=False)

    @classmethod
    def load(cls, path: str | Path | None = None) -> "Config":
        """
        Load configuration from file.

        Args:
            path: Path to config file. If None, uses environment-based default.

        Returns:
            Config instance with loaded values.
        """
        if path is None:
            path = cls._get_default_path()

        path = Path(path)

        if not path.exists():
            logger.debug("Config file not found: %s, using defaults", path)
            return cls._from_dict({})

        with open(path, encoding="utf-8") as f:
            data = json.load(f)

        logger.info("Loaded config from %s", path)
        return cls._from_dict(data)

    @staticmethod
    def _get_default_path() -> Path:
        """Get default config path based on environment."""
        if os.getenv("BLESCOPE_ENV") == "dev":
            logger.debug("DEV environment detected")
            return Path("/etc/blescope/config.dev.json")
        return Path("/etc/blescope/config.json")

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> "Config":
        """Create Config from dictionary (JSON data).

        Environment variables win over file values for deploy-time settings.
        """
        mtu = int(data.get("BLE_MTU", DEFAULT_MTU))
        if not MIN_MTU <= mtu <= MAX_MTU:
            logger.warning("BLE_MTU %d out of range, using %d", mtu, DEFAULT_MTU)
            mtu = DEFAULT_MTU

        ble = BLEConfig(
            mode=os.getenv("BLESCOPE_BLE_MODE", data.get("BLE_MODE", "bleak")),
            adapter=os.getenv("BLESCOPE_ADAPTER", data.get("BLE_ADAPTER")),
            mtu=mtu,
            scan_timeout=float(data.get("SCAN_TIMEOUT", DEFAULT_SCAN_TIMEOUT)),
            connect_timeout=float(data.get("CONNECT_TIMEOUT", 20.0)),
            adapter_poll_interval=float(data.get("ADAPTER_POLL_INTERVAL", 2.0)),
        )

        cors = data.get("CORS_ORIGINS", ["*"])
        env_cors = os.getenv("BLESCOPE_CORS_ORIGINS")
        if env_cors:
            cors = env_cors.split(",")

        api = APIConfig(
            host=data.get("API_HOST", "127.0.0.1"),
            port=int(os.getenv("BLESCOPE_PORT", data.get("API_PORT", 8082))),
            api_key=os.getenv("BLESCOPE_API_KEY", data.get("API_KEY", "")),
            cors_origins=list(cors),
        )

        return cls(ble=ble, api=api, _raw=data)

    def to_dict(self) -> dict[str, Any]:
        """Export config to dictionary for saving."""
        return {
            "BLE_MODE": self.ble.mode,
            "BLE_ADAPTER": self.ble.adapter,
            "BLE_MTU": self.ble.mtu,
            "SCAN_TIMEOUT": self.ble.scan_timeout,
            "CONNECT_TIMEOUT": self.ble.connect_timeout,
            "ADAPTER_POLL_INTERVAL": self.ble.adapter_poll_interval,
            "API_HOST": self.api.host,
            "API_PORT": self.api.port,
            "API_KEY": self.api.api_key,
            "CORS_ORIGINS": self.api.cors_origins,
        }

    def save(self, path: str | Path) -> None:
        """Save config to file."""
        path = Path(path)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2, ensure_ascii=False)
        logger.info("Saved config to %s", path)
