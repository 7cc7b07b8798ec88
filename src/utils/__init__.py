"""Configuration and device helpers shared by the entry scripts."""

from utils.config_loader import load_config

__version__ = "0.1.0"

__all__ = ["get_device", "load_config"]

DEVICES = ("auto", "cuda", "cpu")


def get_device(config):
    """Get device based on config setting.

    "auto" is passed through unresolved so each model runtime can try its own
    GPU providers before falling back to CPU.

    Args:
        config: Configuration dictionary

    Returns:
        str: Device string ('auto', 'cuda' or 'cpu')
    """
    device = str(config.get("device", {}).get("device", "auto")).lower()
    if device not in DEVICES:
        print(f"Warning: Unknown device '{device}', using auto")
        return "auto"
    return device
