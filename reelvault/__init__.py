"""ReelVault - storage-quota and upload-lifecycle manager for a personal video library."""

__version__ = "0.1.0"
