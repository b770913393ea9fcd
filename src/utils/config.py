import logging
import os
import re
import sys
from typing import Any, Dict

import yaml

_ENV_VAR_RE = re.compile(r'\$\{([^}]+)\}')


def expand_env_vars(content: str) -> str:
    """Replaces ${VAR_NAME} with the environment value; unset variables become ''."""
    return _ENV_VAR_RE.sub(lambda m: os.environ.get(m.group(1), ''), content)


def load_config(path: str) -> Dict[str, Any]:
    """Load YAML configuration file with environment variable expansion."""
    with open(path, 'r') as f:
        data = yaml.safe_load(expand_env_vars(f.read()))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping, got {type(data).__name__}")
    return data


def setup_logging(config: Dict[str, Any]):
    """Configure logging based on config."""
    log_config = config.get('logging', {}) or {}
    log_level = getattr(logging, str(log_config.get('level', 'INFO')).upper(), logging.INFO)
    log_file = log_config.get('file')

    handlers = [logging.StreamHandler(sys.stdout)]

    if log_file:
        log_dir = os.path.dirname(log_file)
        if log_dir and not os.path.exists(log_dir):
            os.makedirs(log_dir, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers,
        force=True,
    )

    # SQL statement logging is controlled by database.echo, not the root level.
    logging.getLogger('sqlalchemy.engine').setLevel(logging.WARNING)
