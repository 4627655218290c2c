"""Services package: expose all concrete services from one import."""
from .engagement_service import EngagementStore, decode_cursor, encode_cursor
from .session_service import SessionStore

__all__ = [
    'EngagementStore',
    'SessionStore',
    'decode_cursor',
    'encode_cursor',
]
