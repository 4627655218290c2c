"""Configuration and logging setup for the GitHunt gateway."""
import json
import logging
import os
from typing import Any, Dict, Optional

from dotenv import load_dotenv

DEFAULTS: Dict[str, Any] = {
    'github_client_id': '',
    'github_client_secret': '',
    'github_callback_url': 'http://localhost:3010/login/github/callback',
    'github_token': '',
    'github_api_url': 'https://api.github.com',
    'github_timeout': 10.0,
    'database_url': 'sqlite:///githunt.db',
    'secret_key': '',
    'port': 3010,
    'max_query_length': 2000,
    'feed_page_size': 10,
    'session_lookup_timeout': 2.0,
    'session_lookup_workers': 8,
    'log_level': 'INFO',
    'demo': False,
    'pretty': True,
}

# config key -> (environment variable, converter)
ENV_OVERRIDES = {
    'github_client_id': ('GITHUB_CLIENT_ID', str),
    'github_client_secret': ('GITHUB_CLIENT_SECRET', str),
    'github_callback_url': ('GITHUB_CALLBACK_URL', str),
    'github_token': ('GITHUB_TOKEN', str),
    'github_api_url': ('GITHUB_API_URL', str),
    'github_timeout': ('GITHUB_TIMEOUT', float),
    'database_url': ('DATABASE_URL', str),
    'secret_key': ('SECRET_KEY', str),
    'port': ('PORT', int),
    'max_query_length': ('MAX_QUERY_LENGTH', int),
    'feed_page_size': ('FEED_PAGE_SIZE', int),
    'session_lookup_timeout': ('SESSION_LOOKUP_TIMEOUT', float),
    'session_lookup_workers': ('SESSION_LOOKUP_WORKERS', int),
    'log_level': ('GITHUNT_LOG_LEVEL', str),
    'demo': ('GITHUNT_DEMO', lambda v: v.strip().lower() in ('1', 'true', 'yes', 'on')),
}

logger = logging.getLogger('githunt.config')


def setup_logging(level: str = 'INFO') -> logging.Logger:
    """Configure the root GitHunt logger.

    Args:
        level: Log level string (DEBUG, INFO, WARNING, ERROR, CRITICAL).

    Returns:
        Configured logger instance.
    """
    numeric = getattr(logging, level.upper(), logging.INFO)
    root = logging.getLogger('githunt')
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter('[%(levelname)s] %(name)s: %(message)s'))
        root.addHandler(handler)
    root.setLevel(numeric)
    return root


def load_config(config_path: Optional[str] = 'config.json',
                overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Return the effective configuration.

    Sources, lowest priority first: :data:`DEFAULTS`, the JSON file at
    *config_path* (if present), environment variables (after loading a
    ``.env`` file), and *overrides*. Invalid environment values are logged
    and ignored.
    """
    load_dotenv()
    config = dict(DEFAULTS)

    if config_path and os.path.exists(config_path):
        try:
            with open(config_path, 'r') as f:
                data = json.load(f)
            if isinstance(data, dict):
                config.update(data)
            else:
                logger.warning("Ignoring %s: top level is not an object", config_path)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Could not load %s: %s", config_path, e)

    for key, (env_name, convert) in ENV_OVERRIDES.items():
        raw = os.getenv(env_name)
        if raw is None or raw == '':
            continue
        try:
            config[key] = convert(raw)
        except ValueError:
            logger.warning("Ignoring invalid %s=%r", env_name, raw)

    if overrides:
        config.update(overrides)
    return config
