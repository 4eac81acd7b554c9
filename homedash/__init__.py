"""homedash - self-hosted homelab dashboard with a synced JSON config."""

__version__ = "1.0.0"
