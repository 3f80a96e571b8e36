"""
Configuration management for the WhatsApp bridge server.

Loads environment variables from .env file and provides typed access to configuration.
"""

import os
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables from .env file
env_path = Path(__file__).parent / ".env"
load_dotenv(env_path)


class Config:
    """Server-level configuration."""

    # HTTP server
    PORT = int(os.getenv("PORT", "3000"))
    SERVICE_NAME = os.getenv("SERVICE_NAME", "WhatsApp Bridge Server")

    # Environment
    ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    @classmethod
    def validate(cls) -> bool:
        """Validate that configuration values are usable."""
        errors = []
        if not 0 < cls.PORT < 65536:
            errors.append(f"PORT out of range: {cls.PORT}")
        if cls.LOG_LEVEL not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            errors.append(f"Unknown LOG_LEVEL: {cls.LOG_LEVEL}")

        if errors:
            raise ValueError("; ".join(errors))
        return True


if __name__ == "__main__":
    print("Configuration loaded:")
    print(f"  Port: {Config.PORT}")
    print(f"  Service: {Config.SERVICE_NAME}")
    print(f"  Environment: {Config.ENVIRONMENT}")
    print(f"  Log level: {Config.LOG_LEVEL}")
