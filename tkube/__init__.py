"""Per-environment Teleport tsh clients: version detection, installation, sessions and clusters."""

__version__ = "1.2.0"
__all__ = ["installer", "teleport", "version_detector"]