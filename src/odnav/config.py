#!/usr/bin/env python3
"""Configuration management for ODNAV.

config.json contains:

{
  "client_id": "df3a0308-...",             // Application (client) ID registered with Entra ID
  "authority": "https://login.microsoftonline.com/consumers",
  "redirect_uri": "http://localhost:8080", // Must match the app registration exactly
  "post_logout_redirect_uri": "http://localhost:8080",
  "scopes": ["Files.ReadWrite", "User.Read"],
  "retry_budget": 3,                       // Automatic re-auth retries per operation class
  "auto_fetch_budget_seconds": 60,         // Wall-clock cap for automatic listing
  "redirect_timeout": 120,                 // Bounded wait for a redirect response
  "interaction_ttl": 900,                  // Interaction markers older than this are stale
  "prefer_popup": true,                    // Popup (loopback) flow before redirect flow
  "log_level": "INFO"                      // Unset: ODNAV_LOG_LEVEL, else INFO
}

The session store (session.json) lives beside it and is owned by
CredentialStore; see credential_store.py for its layout.
"""

import json
import logging
import os
from pathlib import Path
from typing import Optional, Dict, Any, List

from .validators import validate_config_value, ValidationError

logger = logging.getLogger(__name__)


class Config:
    """Manages ODNAV configuration."""

    DEFAULT_CONFIG_DIR = Path.home() / ".config" / "odnav"
    CONFIG_FILE = "config.json"
    SESSION_FILE = "session.json"
    LOG_FILE = "odnav.log"

    # Default public client identifier for personal Microsoft accounts
    DEFAULT_CLIENT_ID = "df3a0308-c302-4962-b115-08bd59526bc5"
    DEFAULT_AUTHORITY = "https://login.microsoftonline.com/consumers"
    DEFAULT_REDIRECT_URI = "http://localhost:8080"
    DEFAULT_SCOPES = ["Files.ReadWrite", "User.Read"]

    DEFAULTS = {
        'client_id': '',
        'authority': DEFAULT_AUTHORITY,
        'redirect_uri': DEFAULT_REDIRECT_URI,
        'post_logout_redirect_uri': '',
        'scopes': DEFAULT_SCOPES,
        'retry_budget': 3,
        'auto_fetch_budget_seconds': 60,
        'redirect_timeout': 120,
        'interaction_ttl': 900,
        'prefer_popup': True,
        'log_level': None,
    }

    def __init__(self, config_dir: Optional[Path] = None):
        """Initialize configuration manager.

        Args:
            config_dir: Custom configuration directory path
        """
        env_dir = os.environ.get('ODNAV_CONFIG_DIR')
        self.config_dir = config_dir or (Path(env_dir) if env_dir else self.DEFAULT_CONFIG_DIR)
        self.config_dir.mkdir(parents=True, exist_ok=True)

        self.config_path = self.config_dir / self.CONFIG_FILE
        self.session_path = self.config_dir / self.SESSION_FILE
        self.log_path = self.config_dir / self.LOG_FILE

        self._config: Dict[str, Any] = {}
        self.load()

    def load(self) -> None:
        """Load configuration from file."""
        if self.config_path.exists():
            with open(self.config_path, 'r') as f:
                self._config = json.load(f)
            logger.debug(f"Loaded config from {self.config_path}")
        else:
            self._config = {
                'client_id': '',
                'redirect_uri': self.DEFAULT_REDIRECT_URI,
            }
            self.save()
            logger.debug(f"Created default config at {self.config_path}")

    def save(self) -> None:
        """Save configuration to file."""
        with open(self.config_path, 'w') as f:
            json.dump(self._config, f, indent=2)
        # Secure file permissions (owner read/write only)
        self.config_path.chmod(0o600)

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value.

        Args:
            key: Configuration key
            default: Default value if key not found

        Returns:
            Configuration value
        """
        if key in self._config:
            return self._config[key]
        if default is None:
            return self.DEFAULTS.get(key)
        return default

    def set(self, key: str, value: Any) -> None:
        """Set configuration value with validation.

        Args:
            key: Configuration key
            value: Configuration value

        Raises:
            ValueError: If value is invalid for the given key
        """
        try:
            validated_value = validate_config_value(key, value)
        except ValidationError as e:
            raise ValueError(str(e))
        self._config[key] = validated_value
        self.save()

    def as_dict(self) -> Dict[str, Any]:
        """Effective configuration (defaults overlaid with stored values)."""
        merged = dict(self.DEFAULTS)
        merged.update(self._config)
        return merged

    @property
    def client_id(self) -> str:
        """Get configured client ID (empty string when using the default)."""
        return self._config.get('client_id', '')

    @property
    def effective_client_id(self) -> str:
        return self.client_id or self.DEFAULT_CLIENT_ID

    @property
    def authority(self) -> str:
        return self.get('authority')

    @property
    def redirect_uri(self) -> str:
        return self.get('redirect_uri')

    @property
    def post_logout_redirect_uri(self) -> str:
        """Post-logout destination, defaulting to the redirect URI."""
        return self._config.get('post_logout_redirect_uri') or self.redirect_uri

    @property
    def scopes(self) -> List[str]:
        return list(self.get('scopes'))

    @property
    def retry_budget(self) -> int:
        return int(self.get('retry_budget'))

    @property
    def auto_fetch_budget_seconds(self) -> int:
        return int(self.get('auto_fetch_budget_seconds'))

    @property
    def redirect_timeout(self) -> int:
        return int(self.get('redirect_timeout'))

    @property
    def interaction_ttl(self) -> int:
        return int(self.get('interaction_ttl'))

    @property
    def prefer_popup(self) -> bool:
        return bool(self.get('prefer_popup'))

    @property
    def log_level(self) -> Optional[str]:
        """Get log level, or None when it was never configured."""
        level = self._config.get('log_level')
        return level.upper() if level else None
