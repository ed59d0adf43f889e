#!/usr/bin/env python3
"""
Jolokia Agent Manager - Configuration Management
Configuration loading, validation and defaults for the agent manager.
"""

import copy
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

import structlog
logger = structlog.get_logger()


DEFAULT_CONFIG_FILE = "~/.jolokia-agent.yaml"
CONFIG_ENV_VAR = "JOLOKIA_AGENT_CONFIG"
VALID_LOG_LEVELS = ['DEBUG', 'INFO', 'WARNING', 'ERROR']
VALID_LOG_FORMATS = ['console', 'json']
VALID_VERIFICATION_METHODS = ['pgp', 'sha512', 'sha256', 'sha1', 'md5']

ENV_REFERENCE = re.compile(r"\$\{(?P<name>[A-Za-z_][A-Za-z0-9_]*)(?::(?P<default>[^}]*))?\}")
SENSITIVE_KEY = re.compile(r"password|passwd|token|secret", re.IGNORECASE)

DEFAULT_CONFIG: Dict[str, Any] = {
    "metadata": {
        "url": "https://www.jolokia.org/jolokia.meta",
        "cache_file": "~/.jolokia_meta",
        "max_age_hours": 24,
    },
    "repositories": {
        "extra": [],
        "snapshots_extra": [],
    },
    "verification": {
        "methods": ["pgp", "sha512", "sha256", "sha1"],
        "required": False,
        "keyservers": ["hkps://keys.openpgp.org", "hkps://keyserver.ubuntu.com"],
        "gnupg_home": None,
    },
    "http": {
        "timeout": 30,
        "proxy": None,
        "proxy_user": None,
        "proxy_password": None,
        "user_agent": None,
    },
    "logging": {
        "level": "INFO",
        "format": "console",
        "color": True,
    },
}


@dataclass
class ConfigValidationError:
    """Represents a configuration validation error."""
    path: str                    # Configuration path where error occurred
    message: str                 # Error message
    severity: str = "error"      # error, warning
    suggestion: Optional[str] = None  # Suggested fix


class ConfigManager:
    """
    Configuration management for the agent manager.

    Features:
    - Optional YAML configuration file with environment variable substitution
    - Default value injection
    - Validation with detailed error reporting
    - Dot notation access to sections
    """

    def __init__(self, config_path: Optional[Union[str, Path]] = None):
        """
        Initialize configuration manager.

        Args:
            config_path: Path to the configuration file. Falls back to
                $JOLOKIA_AGENT_CONFIG and then ~/.jolokia-agent.yaml.
        """
        self.explicit = config_path is not None or bool(os.getenv(CONFIG_ENV_VAR))
        raw_path = config_path or os.getenv(CONFIG_ENV_VAR) or DEFAULT_CONFIG_FILE
        self.config_path = Path(os.path.expanduser(str(raw_path)))
        self.config: Dict[str, Any] = {}
        self.validation_errors: List[ConfigValidationError] = []

    def load_config(self) -> bool:
        """
        Load configuration from file with validation.

        A missing default configuration file is not an error; a missing file
        that was asked for explicitly is.

        Returns:
            True if loading successful, False otherwise
        """
        raw_config: Dict[str, Any] = {}
        if self.config_path.exists():
            try:
                with open(self.config_path, 'r') as f:
                    raw_config = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                logger.error("YAML parsing error", path=str(self.config_path), error=str(e))
                return False
            except OSError as e:
                logger.error("Error reading configuration", path=str(self.config_path), error=str(e))
                return False

            if not isinstance(raw_config, dict):
                logger.error("Configuration file must contain a mapping",
                             path=str(self.config_path))
                return False
            logger.debug("Configuration file loaded", path=str(self.config_path))
        elif self.explicit:
            logger.error("Configuration file not found", path=str(self.config_path))
            return False

        # File values take precedence over the built-in defaults
        self.config = _merged(copy.deepcopy(DEFAULT_CONFIG), _expand_env(raw_config))

        if not self._validate_config():
            logger.error("Configuration validation failed",
                         errors=[f"{e.path}: {e.message}" for e in self.validation_errors
                                 if e.severity == 'error'])
            return False

        for warning in self.validation_errors:
            logger.warning("Configuration warning", path=warning.path,
                           message=warning.message, suggestion=warning.suggestion)

        logger.debug("Effective configuration", config=self._mask_sensitive_values(self.config))
        return True

    def get_section(self, section: str, default: Any = None) -> Any:
        """
        Get a specific configuration section.

        Args:
            section: Section name (supports dot notation like 'http.timeout')
            default: Default value if section not found

        Returns:
            Configuration section value or default
        """
        return _lookup(self.config, section, default)

    def set_value(self, path: str, value: Any) -> None:
        """
        Set a configuration value (runtime only).

        Command line options use this to override file settings.

        Args:
            path: Configuration path (dot notation)
            value: Value to set
        """
        _assign(self.config, path, value)

    # -------------------------------------------------------------------------
    # VALIDATION
    # -------------------------------------------------------------------------

    def _validate_config(self) -> bool:
        """
        Validate the loaded configuration.

        Returns:
            True if configuration is valid, False otherwise
        """
        self.validation_errors.clear()

        self._validate_metadata_config()
        self._validate_repositories_config()
        self._validate_verification_config()
        self._validate_http_config()
        self._validate_logging_config()

        return not any(e.severity == 'error' for e in self.validation_errors)

    def _report(self, path: str, message: str, severity: str = 'error',
                suggestion: Optional[str] = None) -> None:
        self.validation_errors.append(
            ConfigValidationError(path, message, severity, suggestion))

    def _validate_metadata_config(self) -> None:
        """Validate metadata configuration section."""
        metadata = self.config.get('metadata', {})

        url = metadata.get('url')
        if not isinstance(url, str) or not url.startswith(('http://', 'https://')):
            self._report('metadata.url', 'metadata.url must be an http(s) URL')

        max_age = metadata.get('max_age_hours')
        if not isinstance(max_age, (int, float)) or max_age < 0:
            self._report('metadata.max_age_hours', 'max_age_hours must be a number >= 0')

    def _validate_repositories_config(self) -> None:
        """Validate repositories configuration section."""
        repositories = self.config.get('repositories', {})

        for key in ('extra', 'snapshots_extra'):
            value = repositories.get(key, [])
            if not isinstance(value, list) or not all(isinstance(r, str) for r in value):
                self._report(f'repositories.{key}', f'repositories.{key} must be a list of URLs')

    def _validate_verification_config(self) -> None:
        """Validate verification configuration section."""
        methods = self.config.get('verification', {}).get('methods', [])
        if not isinstance(methods, list) or not methods:
            self._report('verification.methods', 'verification.methods must be a non-empty list')
            return

        for method in methods:
            if method not in VALID_VERIFICATION_METHODS:
                self._report('verification.methods',
                             f'Invalid verification method {method!r}. Must be one of: '
                             f'{", ".join(VALID_VERIFICATION_METHODS)}')

        for weak in ('md5', 'sha1'):
            if weak in methods:
                self._report('verification.methods',
                             f'{weak} is not an adequate integrity check',
                             severity='warning', suggestion='Prefer pgp, sha512 or sha256')

    def _validate_http_config(self) -> None:
        """Validate HTTP configuration section."""
        http = self.config.get('http', {})

        timeout = http.get('timeout', 30)
        if not isinstance(timeout, (int, float)) or timeout <= 0:
            self._report('http.timeout', 'http.timeout must be a positive number')

        if http.get('proxy_user') and not http.get('proxy'):
            self._report('http.proxy_user', 'proxy_user is set but no proxy is configured',
                         severity='warning')

    def _validate_logging_config(self) -> None:
        """Validate logging configuration section."""
        logging_config = self.config.get('logging', {})

        if str(logging_config.get('level', 'INFO')).upper() not in VALID_LOG_LEVELS:
            self._report('logging.level',
                         f'log level must be one of: {", ".join(VALID_LOG_LEVELS)}')

        if logging_config.get('format', 'console') not in VALID_LOG_FORMATS:
            self._report('logging.format',
                         f'log format must be one of: {", ".join(VALID_LOG_FORMATS)}')

    def _mask_sensitive_values(self, value: Any, key: str = '') -> Any:
        """Replace secrets with a placeholder before the configuration is logged."""
        if value and SENSITIVE_KEY.search(key):
            return "***MASKED***"
        if isinstance(value, dict):
            return {k: self._mask_sensitive_values(v, k) for k, v in value.items()}
        if isinstance(value, list):
            return [self._mask_sensitive_values(item) for item in value]
        return value


# =============================================================================
# HELPERS
# =============================================================================

def _expand_env(value: Any) -> Any:
    """
    Expand ``${VAR}`` and ``${VAR:default}`` references in string values.

    An unset variable without a default is left as written.
    """
    if isinstance(value, dict):
        return {k: _expand_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand_env(item) for item in value]
    if not isinstance(value, str):
        return value

    def expand(match):
        name, default = match.group('name'), match.group('default')
        resolved = os.environ.get(name, default)
        if resolved is None:
            logger.warning("Environment variable not found", variable=name)
            return match.group(0)
        return resolved

    return ENV_REFERENCE.sub(expand, value)


def _merged(defaults: Dict[str, Any], values: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively overlay ``values`` onto a copy of ``defaults``."""
    merged = dict(defaults)
    for key, value in values.items():
        nested = merged.get(key)
        merged[key] = (_merged(nested, value)
                       if isinstance(nested, dict) and isinstance(value, dict) else value)
    return merged


def _lookup(data: Dict[str, Any], path: str, default: Any = None) -> Any:
    node: Any = data
    for key in path.split('.'):
        if not isinstance(node, dict) or key not in node:
            return default
        node = node[key]
    return node


def _assign(data: Dict[str, Any], path: str, value: Any) -> None:
    *parents, leaf = path.split('.')
    node = data
    for key in parents:
        node = node.setdefault(key, {})
    node[leaf] = value
