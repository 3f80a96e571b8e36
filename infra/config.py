"""
Infrastructure configuration system.

Environment-based backend selection with sensible defaults.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

import httpx

from bridge.lifecycle import LifecycleSettings
from protocol import ProtocolSessionFactory, StubProtocolSessionFactory

ProtocolBackendType = Literal["stub", "pyaileys"]


@dataclass
class InfraConfig:
    """Infrastructure configuration from environment."""

    # Protocol session
    protocol_backend: ProtocolBackendType
    auth_sessions_dir: Path

    # Lifecycle policy
    reconnect_delay_s: float
    reconnect_max_attempts: int
    heartbeat_interval_s: float
    battery_floor: int

    # External backend
    backend_timeout_s: float

    @classmethod
    def from_env(cls) -> "InfraConfig":
        """
        Load configuration from environment variables.

        Defaults: 3s fixed reconnect delay
        with no cap, 30s heartbeat, battery floor 20.
        """
        return cls(
            protocol_backend=os.getenv("PROTOCOL_BACKEND", "pyaileys"),  # type: ignore
            auth_sessions_dir=Path(os.getenv("AUTH_SESSIONS_DIR", "./auth_sessions")),
            reconnect_delay_s=float(os.getenv("RECONNECT_DELAY_SECONDS", "3")),
            reconnect_max_attempts=int(os.getenv("RECONNECT_MAX_ATTEMPTS", "0")),
            heartbeat_interval_s=float(os.getenv("HEARTBEAT_INTERVAL_SECONDS", "30")),
            battery_floor=int(os.getenv("BATTERY_FLOOR", "20")),
            backend_timeout_s=float(os.getenv("BACKEND_TIMEOUT_SECONDS", "10")),
        )

    def lifecycle_settings(self) -> LifecycleSettings:
        return LifecycleSettings(
            reconnect_delay_s=self.reconnect_delay_s,
            reconnect_max_attempts=self.reconnect_max_attempts,
            heartbeat_interval_s=self.heartbeat_interval_s,
            battery_floor=self.battery_floor,
        )

    def create_protocol_factory(self) -> ProtocolSessionFactory:
        """Create protocol session factory based on configuration."""
        if self.protocol_backend == "stub":
            return StubProtocolSessionFactory()
        if self.protocol_backend == "pyaileys":
            from protocol.pyaileys_session import PyaileysSessionFactory

            return PyaileysSessionFactory(self.auth_sessions_dir)
        raise ValueError(f"Unknown PROTOCOL_BACKEND: {self.protocol_backend}")

    def create_http_client(self) -> httpx.AsyncClient:
        """Shared client for all external backend calls."""
        return httpx.AsyncClient(timeout=self.backend_timeout_s)


def get_config() -> InfraConfig:
    """Get global infrastructure configuration."""
    return InfraConfig.from_env()
