"""
Configuration module for the artifact registry.

Loads all configuration from environment variables with sensible defaults.
"""

import os


def _getbool(name, default):
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Config:
    """
    Registry configuration from environment variables.

    Loads all configuration values from environment variables with sensible defaults.
    All settings can be overridden by setting the corresponding environment variable.
    """

    def __init__(self):
        """
        Initialize configuration from environment variables.

        Environment Variables:
            LOG_LEVEL: Logging level (DEBUG, INFO, WARNING, ERROR). Default: INFO
            FLASK_HOST: Server bind address. Default: 0.0.0.0
            FLASK_PORT: Server bind port. Default: 5000
            REGISTRY_DOMAIN: Host used in Location headers. Default: localhost:5000
            LISTEN_MODE: Scheme used in Location headers. Default: http
            STORAGE_ROOT: Local blob cache and upload area. Default: ./data
            STORAGE_DRIVER: Backend adapter (filesystem, chunked or empty). Default: empty
            BACKEND_ROOT: Root directory of the backend. Default: <STORAGE_ROOT>/backend
            CHUNK_SIZE: Chunk size of the chunked driver in bytes. Default: 4194304
            CACHABLE: Keep local blob copies after pushing to the backend. Default: true
            UPLOAD_TIMEOUT: Seconds an idle upload session is kept, 0 to keep forever. Default: 3600
            DATABASE_URL: SQLAlchemy URL for records, empty for in-memory. Default: empty
            MAX_NAME_LENGTH: Maximum namespace/repository length. Default: 255
            MAX_TAG_LENGTH: Maximum tag length. Default: 128

        Raises:
            ValueError: if a numeric variable is not an integer
        """
        # Logging
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

        # Server
        self.FLASK_HOST = os.getenv("FLASK_HOST", "0.0.0.0")
        self.FLASK_PORT = int(os.getenv("FLASK_PORT", "5000"))
        self.REGISTRY_DOMAIN = os.getenv("REGISTRY_DOMAIN", "localhost:5000")
        self.LISTEN_MODE = os.getenv("LISTEN_MODE", "http")

        # Storage
        self.STORAGE_ROOT = os.getenv("STORAGE_ROOT", "./data")
        self.STORAGE_DRIVER = os.getenv("STORAGE_DRIVER", "")
        self.BACKEND_ROOT = os.getenv("BACKEND_ROOT") or os.path.join(self.STORAGE_ROOT, "backend")
        self.CHUNK_SIZE = int(os.getenv("CHUNK_SIZE", str(4 << 20)))  # bytes
        self.CACHABLE = _getbool("CACHABLE", True)
        self.UPLOAD_TIMEOUT = int(os.getenv("UPLOAD_TIMEOUT", "3600"))  # seconds

        # Records
        self.DATABASE_URL = os.getenv("DATABASE_URL", "")

        # Validation limits
        self.MAX_NAME_LENGTH = int(os.getenv("MAX_NAME_LENGTH", "255"))
        self.MAX_TAG_LENGTH = int(os.getenv("MAX_TAG_LENGTH", "128"))

        if self.CHUNK_SIZE <= 0:
            raise ValueError(f"CHUNK_SIZE must be positive, got {self.CHUNK_SIZE}")
        if self.UPLOAD_TIMEOUT < 0:
            raise ValueError(f"UPLOAD_TIMEOUT must not be negative, got {self.UPLOAD_TIMEOUT}")

    def __repr__(self):
        """String representation for logging."""
        return (
            f"Config(LOG_LEVEL={self.LOG_LEVEL}, "
            f"FLASK_HOST={self.FLASK_HOST}, "
            f"FLASK_PORT={self.FLASK_PORT}, "
            f"STORAGE_ROOT={self.STORAGE_ROOT}, "
            f"STORAGE_DRIVER={self.STORAGE_DRIVER or 'none'}, "
            f"CHUNK_SIZE={self.CHUNK_SIZE}, "
            f"CACHABLE={self.CACHABLE}, "
            f"UPLOAD_TIMEOUT={self.UPLOAD_TIMEOUT}, "
            f"DATABASE={'sql' if self.DATABASE_URL else 'memory'})"
        )


# Global config instance
config = Config()
