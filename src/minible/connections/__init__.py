"""
Minible Connections

Transports for running commands on managed hosts.
"""

from minible.connections.base import (
    Connection,
    ConnectionPool,
    RunResult,
    create_connection_factory,
)
from minible.connections.local import LocalConnection

__all__ = [
    'Connection',
    'ConnectionPool',
    'RunResult',
    'LocalConnection',
    'create_connection_factory',
]
