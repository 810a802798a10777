"""
Identity: OAuth credentials and the secret file that holds them.
"""

from .credentials import (
    AuthState,
    CallbackResult,
    CredentialManager,
    LoopbackReceiver,
    open_system_browser,
)
from .secrets import CREDENTIAL_KEYS, SecretStore

__all__ = [
    "AuthState",
    "CallbackResult",
    "CredentialManager",
    "LoopbackReceiver",
    "open_system_browser",
    "SecretStore",
    "CREDENTIAL_KEYS",
]
