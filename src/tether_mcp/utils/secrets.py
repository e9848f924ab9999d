"""
Secret management utilities for the tether-mcp client.

API keys are read from environment variables, with .env files loaded
for local development.
"""

import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Paths to check for .env files, in order of precedence
ENV_PATHS = [
    Path.cwd() / ".env",
    Path.cwd() / ".secrets.env",
    Path.home() / ".tether_mcp" / ".env",
]

_PROVIDER_KEYS = {
    "openrouter": "OPENROUTER_API_KEY",
    "openai": "OPENAI_API_KEY",
}

_env_loaded = False


def load_env_files() -> bool:
    """
    Load the first .env file found in ENV_PATHS.

    Returns:
        True if a file was loaded.
    """
    global _env_loaded
    if _env_loaded:
        return True
    for env_path in ENV_PATHS:
        if env_path.exists():
            load_dotenv(dotenv_path=env_path)
            _env_loaded = True
            return True
    return False


def get_secret(key: str, default: Optional[str] = None) -> Optional[str]:
    """
    Get a secret from environment variables with fallback.

    Args:
        key: The environment variable name containing the secret
        default: Default value if the secret is not found

    Returns:
        The secret value or default if not found
    """
    load_env_files()
    return os.environ.get(key, default)


def get_api_key(provider: str) -> Optional[str]:
    """
    Get API key for an inference provider.

    The "openai" provider speaks the OpenAI wire format and is usually
    pointed at OpenRouter, so OPENROUTER_API_KEY is tried first for it.

    Raises:
        ValueError: If the provider is not supported
    """
    provider = provider.lower()

    if provider == "openai":
        return get_secret("OPENROUTER_API_KEY") or get_secret("OPENAI_API_KEY")
    if provider in _PROVIDER_KEYS:
        return get_secret(_PROVIDER_KEYS[provider])
    raise ValueError(f"Unknown provider: {provider}")
