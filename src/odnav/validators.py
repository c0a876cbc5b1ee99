"""Configuration validators for ODNAV."""

import logging
from typing import Any, List
from urllib.parse import urlparse
import uuid

logger = logging.getLogger(__name__)


class ValidationError(Exception):
    """Raised when configuration validation fails."""
    pass


class ConfigValidator:
    """Base class for configuration validators."""

    def validate(self, value: Any) -> Any:
        """Validate and normalize a configuration value.

        Args:
            value: Raw configuration value

        Returns:
            Validated and normalized value

        Raises:
            ValidationError: If validation fails
        """
        raise NotImplementedError


class ClientIdValidator(ConfigValidator):
    """Validates application client ID (must be valid UUID format)."""

    def validate(self, value: Any) -> str:
        if not isinstance(value, str):
            raise ValidationError(f"Client ID must be a string, got: {type(value)}")

        client_id = value.strip()

        if not client_id:
            raise ValidationError("Client ID cannot be empty")

        try:
            uuid.UUID(client_id)
        except ValueError:
            raise ValidationError(
                f"Client ID must be a valid UUID format, got: {client_id}"
            )

        return client_id


class UrlValidator(ConfigValidator):
    """Validates absolute URLs, optionally restricting the scheme."""

    def __init__(self, schemes=('http', 'https')):
        self.schemes = tuple(schemes)

    def validate(self, value: Any) -> str:
        if not isinstance(value, str):
            raise ValidationError(f"URL must be a string, got: {type(value)}")

        url = value.strip()
        parsed = urlparse(url)

        if parsed.scheme not in self.schemes:
            raise ValidationError(
                f"URL scheme must be one of: {', '.join(self.schemes)}, got: {url}"
            )

        if not parsed.netloc:
            raise ValidationError(f"URL must include a host, got: {url}")

        return url.rstrip('/')


class ScopesValidator(ConfigValidator):
    """Validates a scope list (list of names or a space-separated string)."""

    def validate(self, value: Any) -> List[str]:
        if isinstance(value, str):
            scopes = value.replace(',', ' ').split()
        elif isinstance(value, (list, tuple)):
            scopes = [str(s).strip() for s in value]
        else:
            raise ValidationError(f"Scopes must be a list or string, got: {type(value)}")

        scopes = [s for s in scopes if s]
        if not scopes:
            raise ValidationError("At least one scope is required")

        # Reserved scopes are added by the identity library itself
        reserved = {'openid', 'profile', 'offline_access'}
        rejected = [s for s in scopes if s.lower() in reserved]
        if rejected:
            raise ValidationError(
                f"Reserved scopes are managed automatically: {', '.join(rejected)}"
            )

        return scopes


class LogLevelValidator(ConfigValidator):
    """Validates log level."""

    VALID_LEVELS = {'DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'}

    def validate(self, value: Any) -> str:
        if not isinstance(value, str):
            raise ValidationError(f"Log level must be a string, got: {type(value)}")

        level = value.upper()

        if level not in self.VALID_LEVELS:
            raise ValidationError(
                f"Invalid log level: {value}. Must be one of: {', '.join(sorted(self.VALID_LEVELS))}"
            )

        return level


class BooleanValidator(ConfigValidator):
    """Validates boolean values."""

    TRUE_VALUES = {'true', '1', 'yes', 'on', 'enabled'}
    FALSE_VALUES = {'false', '0', 'no', 'off', 'disabled'}

    def validate(self, value: Any) -> bool:
        if isinstance(value, bool):
            return value

        if isinstance(value, str):
            normalized = value.lower().strip()

            if normalized in self.TRUE_VALUES:
                return True

            if normalized in self.FALSE_VALUES:
                return False

            raise ValidationError(
                f"Invalid boolean value: {value}. Expected: true/false, yes/no, 1/0, on/off, enabled/disabled"
            )

        if isinstance(value, int):
            return bool(value)

        raise ValidationError(f"Cannot convert to boolean: {value}")


class IntegerValidator(ConfigValidator):
    """Validates integer values with optional min/max bounds."""

    def __init__(self, min_value: int = None, max_value: int = None):
        self.min_value = min_value
        self.max_value = max_value

    def validate(self, value: Any) -> int:
        if isinstance(value, bool):
            raise ValidationError(f"Must be an integer, got: {value}")
        try:
            int_value = int(value)
        except (ValueError, TypeError):
            raise ValidationError(f"Must be an integer, got: {value}")

        if self.min_value is not None and int_value < self.min_value:
            raise ValidationError(
                f"Must be at least {self.min_value}, got: {int_value}"
            )

        if self.max_value is not None and int_value > self.max_value:
            raise ValidationError(
                f"Must be at most {self.max_value}, got: {int_value}"
            )

        return int_value


class FolderNameValidator(ConfigValidator):
    """Validates a OneDrive folder name."""

    # Characters OneDrive rejects in item names
    INVALID_CHARS = set('"*:<>?/\\|')
    MAX_LENGTH = 255

    def validate(self, value: Any) -> str:
        if not isinstance(value, str):
            raise ValidationError(f"Folder name must be a string, got: {type(value)}")

        name = value.strip()

        if not name:
            raise ValidationError("Folder name cannot be empty")

        if len(name) > self.MAX_LENGTH:
            raise ValidationError(
                f"Folder name must be at most {self.MAX_LENGTH} characters, got: {len(name)}"
            )

        bad = sorted(self.INVALID_CHARS.intersection(name))
        if bad:
            raise ValidationError(
                f"Folder name contains invalid characters: {' '.join(bad)}"
            )

        if name.endswith('.'):
            raise ValidationError("Folder name cannot end with a period")

        return name


# Registry of validators for known config keys
VALIDATORS = {
    'client_id': ClientIdValidator(),
    'authority': UrlValidator(schemes=('https',)),
    'redirect_uri': UrlValidator(),
    'post_logout_redirect_uri': UrlValidator(),
    'scopes': ScopesValidator(),
    'retry_budget': IntegerValidator(min_value=1, max_value=10),
    'auto_fetch_budget_seconds': IntegerValidator(min_value=5, max_value=600),
    'redirect_timeout': IntegerValidator(min_value=5, max_value=600),
    'interaction_ttl': IntegerValidator(min_value=60, max_value=86400),
    'prefer_popup': BooleanValidator(),
    'log_level': LogLevelValidator(),
}


def validate_config_value(key: str, value: Any) -> Any:
    """Validate a configuration value using registered validators.

    Args:
        key: Configuration key
        value: Value to validate

    Returns:
        Validated and normalized value

    Raises:
        ValidationError: If validation fails
    """
    if key in VALIDATORS:
        return VALIDATORS[key].validate(value)

    # Unknown keys pass through unchanged
    return value


def validate_folder_name(name: Any) -> str:
    """Validate a folder name, raising ValueError on failure."""
    try:
        return FolderNameValidator().validate(name)
    except ValidationError as e:
        raise ValueError(str(e))
