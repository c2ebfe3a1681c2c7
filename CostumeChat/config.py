"""
Configuration module for CostumeChat.
Stores the messaging endpoints and connection settings, read from the environment.
"""

import os
from typing import Dict, Any


def _env_flag(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Application configuration class."""

    # Messaging server (websocket)
    SOCKET_URL = os.environ.get("COSTUMECHAT_SOCKET_URL", "ws://localhost:8000/ws")
    CONNECT_TIMEOUT_SECONDS = float(os.environ.get("COSTUMECHAT_CONNECT_TIMEOUT", "20"))
    AUTO_RECONNECT = _env_flag("COSTUMECHAT_AUTO_RECONNECT", True)

    # Marketplace REST API
    API_URL = os.environ.get("COSTUMECHAT_API_URL", "http://localhost:8000/api/v2")
    API_TOKEN = os.environ.get("COSTUMECHAT_API_TOKEN")

    # Logging profile (development, production, testing)
    ENV = os.environ.get("COSTUMECHAT_ENV", "development")

    @classmethod
    def get_config(cls) -> Dict[str, Any]:
        """Get all configuration values as a dictionary."""
        return {
            "SOCKET_URL": cls.SOCKET_URL,
            "CONNECT_TIMEOUT_SECONDS": cls.CONNECT_TIMEOUT_SECONDS,
            "AUTO_RECONNECT": cls.AUTO_RECONNECT,
            "API_URL": cls.API_URL,
            "API_TOKEN": cls.API_TOKEN,
            "ENV": cls.ENV,
        }


# Create config instance
config = Config()
