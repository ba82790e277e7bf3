"""
askfile Configuration Module
Reads the API key from environment variables or a .env file and builds
the configuration object passed to the completion client.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

API_KEY_ENV = "OPENAI_API_KEY"

DEFAULT_ENDPOINT = "https://api.openai.com/v1/chat/completions"
DEFAULT_MODEL = "gpt-4"
DEFAULT_MAX_TOKENS = 1000
DEFAULT_TEMPERATURE = 0.8
CONVERSATIONS_DIR = "conversations"
SCRATCH_FILE = "gpt_changes.py"


@dataclass
class CompletionOptions:
    """Per-request sampling options for the chat-completion call."""
    max_tokens: int = DEFAULT_MAX_TOKENS
    temperature: float = DEFAULT_TEMPERATURE


@dataclass
class AppConfig:
    """Settings resolved once at startup and handed to each component."""
    api_key: Optional[str] = None
    api_endpoint: str = DEFAULT_ENDPOINT
    model: str = DEFAULT_MODEL
    conversations_dir: str = CONVERSATIONS_DIR
    scratch_file: str = SCRATCH_FILE


def load_env_file(env_path: str = ".env") -> List[Path]:
    """
    Load environment variables from one or more .env files if they exist.

    Search order:
    1) Provided env_path (current working directory by default)
    2) The directory of this config.py module

    Only sets variables that are not already present in the environment.

    Returns:
        The .env files that were read
    """
    candidates = [Path(env_path), Path(__file__).resolve().parent / ".env"]
    loaded = []

    for env_file in candidates:
        if not env_file.is_file() or env_file in loaded:
            continue
        try:
            with open(env_file, 'r', encoding='utf-8') as f:
                for line in f:
                    line = line.strip()
                    # Skip empty lines and comments
                    if not line or line.startswith('#'):
                        continue
                    # Parse KEY=VALUE format
                    if '=' in line:
                        key, value = line.split('=', 1)
                        key = key.strip()
                        value = value.strip().strip('"').strip("'")
                        # Only set if not already in environment
                        if key and value and not os.environ.get(key):
                            os.environ[key] = value
        except OSError:
            # Unreadable candidate, try the next one
            continue
        loaded.append(env_file)

    return loaded


def get_config(env_path: str = ".env") -> AppConfig:
    """
    Build the application configuration.

    Priority for the API key:
    1. Environment variables
    2. .env file

    Returns:
        AppConfig with the resolved settings
    """
    load_env_file(env_path)
    return AppConfig(api_key=os.environ.get(API_KEY_ENV) or None)


def validate_config(config: AppConfig) -> bool:
    """
    Validate that required configuration is present.

    Args:
        config: Configuration object

    Returns:
        True if valid, False otherwise
    """
    if not config.api_key:
        return False

    if not config.model:
        return False

    if not config.api_endpoint:
        return False

    return True
