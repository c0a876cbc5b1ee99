#!/usr/bin/env python3
"""Session-scoped credential storage for ODNAV.

Session File Structure
======================

session.json contains exactly two logical keys:

{
  "interaction.status": {
    // Present only while an interactive flow is in flight
    "status": "in_progress",
    "mode": "redirect",              // "popup" or "redirect"
    "started_at": 1717000000.0,      // Unix timestamp
    "scopes": ["Files.ReadWrite"],
    "flow": { ... }                  // Pending auth-code flow (redirect mode only)
  },

  "token_cache": "gAAAAAB..."         // Provider's serialized token cache, Fernet-encrypted
}

Anything that must survive a redirect (a process restart in the middle of an
interactive flow) lives here and nowhere else.
"""

import base64
import fcntl
import json
import logging
import os
import time
from pathlib import Path
from typing import Optional, Dict, Any, List

from cryptography.fernet import Fernet, InvalidToken
import keyring

logger = logging.getLogger(__name__)


INTERACTION_KEY = "interaction.status"
TOKEN_CACHE_KEY = "token_cache"
PROBE_KEY = "odnav.probe"

KEYRING_SERVICE = "odnav"
KEYRING_KEY_NAME = "token_cache_encryption_key"


class CredentialStore:
    """Key/value store backed by a single locked JSON file."""

    def __init__(self, path: Path, encryption_key: Optional[bytes] = None):
        """Initialize credential store.

        Args:
            path: Session file path
            encryption_key: Fernet key for the token cache. If None, the key is
                read from (or created in) the system keyring on first use.
        """
        self.path = path
        self._encryption_key = encryption_key

    def _read_locked(self, f) -> Dict[str, Any]:
        f.seek(0)
        raw = f.read()
        if not raw.strip():
            return {}
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.error(f"Session store corrupted, resetting: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def _load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        with open(self.path, 'r') as f:
            fcntl.flock(f.fileno(), fcntl.LOCK_SH)
            try:
                return self._read_locked(f)
            finally:
                fcntl.flock(f.fileno(), fcntl.LOCK_UN)

    def _update(self, mutate) -> None:
        """Apply ``mutate`` to the stored dictionary under an exclusive lock."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o600)
        with os.fdopen(fd, 'r+') as f:
            fcntl.flock(f.fileno(), fcntl.LOCK_EX)
            try:
                data = self._read_locked(f)
                mutate(data)
                f.seek(0)
                f.truncate()
                json.dump(data, f, indent=2)
                f.flush()
            finally:
                fcntl.flock(f.fileno(), fcntl.LOCK_UN)

    # Generic key/value access

    def get(self, key: str, default: Any = None) -> Any:
        return self._load().get(key, default)

    def set(self, key: str, value: Any) -> None:
        def mutate(data):
            data[key] = value
        self._update(mutate)

    def remove(self, key: str) -> bool:
        """Remove a key. Returns True if it was present."""
        removed = []

        def mutate(data):
            if key in data:
                del data[key]
                removed.append(key)
        if not self.path.exists():
            return False
        self._update(mutate)
        return bool(removed)

    def keys(self) -> List[str]:
        return list(self._load().keys())

    def probe(self) -> bool:
        """Check that the store can be written, read back and cleaned up."""
        token = f"probe-{time.time()}"
        try:
            self.set(PROBE_KEY, token)
            ok = self.get(PROBE_KEY) == token
            self.remove(PROBE_KEY)
            return ok
        except OSError as e:
            logger.warning(f"Session store probe failed: {e}")
            return False

    # Interaction marker

    def get_interaction_marker(self) -> Optional[Dict[str, Any]]:
        return self.get(INTERACTION_KEY)

    def set_interaction_marker(self, mode: str, scopes: List[str],
                               flow: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        marker = {
            'status': 'in_progress',
            'mode': mode,
            'started_at': time.time(),
            'scopes': list(scopes),
        }
        if flow is not None:
            marker['flow'] = flow
        self.set(INTERACTION_KEY, marker)
        logger.debug(f"Interaction marker written ({mode})")
        return marker

    def clear_interaction_marker(self) -> bool:
        removed = self.remove(INTERACTION_KEY)
        if removed:
            logger.debug("Interaction marker cleared")
        return removed

    def interaction_marker_age(self) -> Optional[float]:
        """Seconds since the current marker was written, or None if absent."""
        marker = self.get_interaction_marker()
        if not marker:
            return None
        return max(0.0, time.time() - float(marker.get('started_at', 0)))

    # Provider token cache

    def _get_encryption_key(self) -> bytes:
        """Get or create encryption key from system keyring.

        Returns:
            Encryption key bytes
        """
        if self._encryption_key:
            return self._encryption_key

        key_str = keyring.get_password(KEYRING_SERVICE, KEYRING_KEY_NAME)

        if key_str:
            self._encryption_key = base64.b64decode(key_str.encode())
            return self._encryption_key

        key = Fernet.generate_key()
        keyring.set_password(KEYRING_SERVICE, KEYRING_KEY_NAME, base64.b64encode(key).decode())
        logger.info("Generated new token cache encryption key")
        self._encryption_key = key
        return key

    def save_token_cache(self, serialized: str) -> None:
        """Encrypt and store the provider's serialized token cache."""
        fernet = Fernet(self._get_encryption_key())
        encrypted = fernet.encrypt(serialized.encode()).decode()
        self.set(TOKEN_CACHE_KEY, encrypted)
        logger.debug("Token cache saved with encryption")

    def load_token_cache(self) -> Optional[str]:
        """Load and decrypt the provider's token cache.

        Returns:
            Serialized cache or None if absent or unreadable
        """
        encrypted = self.get(TOKEN_CACHE_KEY)
        if not encrypted:
            return None

        try:
            fernet = Fernet(self._get_encryption_key())
            return fernet.decrypt(encrypted.encode()).decode()
        except InvalidToken:
            logger.warning("Could not decrypt token cache - please re-authenticate")
            self.remove(TOKEN_CACHE_KEY)
            return None

    def clear_token_cache(self) -> bool:
        return self.remove(TOKEN_CACHE_KEY)
