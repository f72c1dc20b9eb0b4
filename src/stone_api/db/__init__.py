from .enums import AuthProvider
from .models import Account, RefreshCredential
from .session import get_engine, get_session, get_sessionmaker, init_db

__all__ = [
    "Account",
    "AuthProvider",
    "RefreshCredential",
    "get_engine",
    "get_session",
    "get_sessionmaker",
    "init_db",
]
