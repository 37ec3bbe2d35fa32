"""
Configuration management for landlord applications.

Uses environment variables with sensible defaults.
"""
import os


class AppConfig:
    """Configuration for the HTTP surface."""

    # Server
    HOST = os.getenv("APP_HOST", "0.0.0.0")
    PORT = int(os.getenv("APP_PORT", "8000"))


class SyncConfig:
    """Configuration for the offline sync subsystem."""

    # Local storage (cache files, metadata, pending operation log)
    DATA_DIR = os.path.expanduser(os.getenv("LANDLORD_DATA_DIR", "~/.landlord"))

    # Remote document store
    REMOTE_API_URL = os.getenv("REMOTE_API_URL", "http://localhost:8001")
    REMOTE_TIMEOUT = float(os.getenv("REMOTE_TIMEOUT", "10"))
    REMOTE_POLL_INTERVAL = float(os.getenv("REMOTE_POLL_INTERVAL", "5"))

    # Reachability probing (defaults to the remote store itself)
    REACHABILITY_URL = os.getenv("REACHABILITY_URL", REMOTE_API_URL)
    REACHABILITY_INTERVAL = float(os.getenv("REACHABILITY_INTERVAL", "5"))


def get_app_config():
    """Get configuration for the HTTP surface."""
    return AppConfig


def get_sync_config():
    """Get configuration for the sync subsystem."""
    return SyncConfig


def print_config(config_class):
    """Print configuration for debugging."""
    print(f"\n{'='*60}")
    print(f"{config_class.__name__} Configuration:")
    print(f"{'='*60}")
    for attr in dir(config_class):
        if attr.isupper():
            value = getattr(config_class, attr)
            print(f"  {attr:22} = {value}")
    print(f"{'='*60}\n")
