"""
Infrastructure initialization and bootstrap.

Singleton pattern for wiring the lifecycle manager from configuration.
"""

from typing import Optional

from backend import BackendFactory
from bridge.lifecycle import SessionLifecycleManager
from bridge.stores import BridgeStores

from .config import InfraConfig, get_config


class InfraBootstrap:
    """
    Bootstrap infrastructure based on configuration.

    Singleton pattern - single instance per process.
    """

    _instance: Optional["InfraBootstrap"] = None

    def __init__(self, config: Optional[InfraConfig] = None):
        """Initialize bootstrap with configuration."""
        self.config = config or get_config()
        self.stores = BridgeStores()
        self.backends = BackendFactory(self.config.create_http_client())
        self.manager = SessionLifecycleManager(
            factory=self.config.create_protocol_factory(),
            backends=self.backends,
            stores=self.stores,
            settings=self.config.lifecycle_settings(),
        )

    @classmethod
    def get_instance(cls, config: Optional[InfraConfig] = None) -> "InfraBootstrap":
        """
        Get singleton instance.

        Args:
            config: Optional custom configuration (only used first time)

        Returns:
            Singleton InfraBootstrap instance
        """
        if cls._instance is None:
            cls._instance = cls(config)
        return cls._instance

    @classmethod
    def reset(cls):
        """Reset singleton (for testing)."""
        cls._instance = None

    def get_manager(self) -> SessionLifecycleManager:
        return self.manager

    async def shutdown(self) -> None:
        """Close all sessions and the shared HTTP client."""
        await self.manager.shutdown()
        await self.backends.aclose()

    def __repr__(self) -> str:
        return (
            f"InfraBootstrap(protocol={self.config.protocol_backend}, "
            f"auth_dir={self.config.auth_sessions_dir}, "
            f"reconnect_delay={self.config.reconnect_delay_s}s)"
        )


def bootstrap_infrastructure(config: Optional[InfraConfig] = None) -> InfraBootstrap:
    """
    Bootstrap all infrastructure backends.

    Args:
        config: Optional custom configuration

    Returns:
        InfraBootstrap instance with the lifecycle manager wired
    """
    return InfraBootstrap.get_instance(config)
