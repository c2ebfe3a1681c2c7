"""
Constants and exceptions shared by the messaging client.
"""

from .constants import (
    CLIENT_ID_PREFIX,
    MAX_RECONNECT_ATTEMPTS,
    RECONNECT_DELAY_SECONDS,
    RECONNECT_MAX_DELAY_SECONDS,
)
from .exceptions import ClientError, ProtocolError

__all__ = [
    'ClientError',
    'ProtocolError',
    'CLIENT_ID_PREFIX',
    'MAX_RECONNECT_ATTEMPTS',
    'RECONNECT_DELAY_SECONDS',
    'RECONNECT_MAX_DELAY_SECONDS',
]
