from .account import Account
from .refresh_credential import RefreshCredential

__all__ = [
    "Account",
    "RefreshCredential",
]
