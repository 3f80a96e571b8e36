"""
Infrastructure module exports.

Configuration and bootstrap for the protocol and backend layers.
"""

from .config import InfraConfig, get_config, ProtocolBackendType
from .bootstrap import InfraBootstrap, bootstrap_infrastructure

__all__ = [
    "InfraConfig",
    "get_config",
    "ProtocolBackendType",
    "InfraBootstrap",
    "bootstrap_infrastructure",
]
