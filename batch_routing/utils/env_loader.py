"""
Environment variable loading utility.

Reads simple KEY=VALUE files (such as env_var.env) into os.environ.
"""
import os
import logging

logger = logging.getLogger(__name__)


def load_env_from_file(file_path, override=True):
    """
    Load environment variables from a file.

    Args:
        file_path: Path to the environment variable file.
        override: When False, variables already set in the environment are kept.

    Returns:
        True if file was loaded successfully, False otherwise.
    """
    if not os.path.exists(file_path):
        logger.warning(f"Environment file not found: {file_path}")
        return False

    loaded = 0
    try:
        with open(file_path, 'r') as f:
            for line_number, line in enumerate(f, start=1):
                line = line.strip()
                if not line or line.startswith('#'):
                    continue
                if line.startswith('export '):
                    line = line[len('export '):]
                if '=' not in line:
                    logger.warning(f"Skipping malformed line {line_number} in {file_path}")
                    continue

                key, value = line.split('=', 1)
                key = key.strip()
                value = value.strip()
                if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
                    value = value[1:-1]

                if not override and key in os.environ:
                    continue
                os.environ[key] = value
                loaded += 1
    except OSError as e:
        logger.error(f"Error loading environment variables from {file_path}: {str(e)}")
        return False

    logger.info(f"Loaded {loaded} environment variables from {file_path}")
    return True
