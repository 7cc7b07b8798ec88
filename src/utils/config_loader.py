"""Configuration loader for the upscaler entry scripts."""

import sys
from pathlib import Path

try:
    import tomllib
except ModuleNotFoundError:
    import tomli as tomllib

# src/utils/config_loader.py -> src/utils/ -> src/ -> project root
DEFAULT_CONFIG_PATH = Path(__file__).parent.parent.parent / "config.toml"


def load_config(config_path=None):
    """
    Load configuration from config.toml.

    Args:
        config_path: Optional path to the config file. Defaults to config.toml
                    in the project root.

    Returns:
        dict: Parsed configuration dictionary

    Raises:
        SystemExit: If the config file is not found
    """
    config_path = Path(config_path) if config_path is not None else DEFAULT_CONFIG_PATH

    if not config_path.exists():
        print(f"Error: config.toml not found at {config_path}")
        print("Please create config.toml in the project root with your settings.")
        sys.exit(1)

    with open(config_path, "rb") as f:
        return tomllib.load(f)
