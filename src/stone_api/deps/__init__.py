from .auth import get_current_account_dep, get_identity_runtime_dep, get_session_service_dep

__all__ = [
    "get_current_account_dep",
    "get_identity_runtime_dep",
    "get_session_service_dep",
]
