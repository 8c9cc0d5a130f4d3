"""Node Disk Agent: per-node block device discovery and storage provisioning."""

__version__ = "0.1.0"
