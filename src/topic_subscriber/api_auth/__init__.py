"""
Authentication module for Genesys Cloud.

Provides the OAuth2 PKCE login flow and the local token/settings store.
"""

from .auth import Authenticator, PkceSession, RedirectListener, code_challenge_s256, generate_code_verifier
from .credential_store import ClientSettings, CredentialStore, TokenRecord

__all__: list[str] = [
    "Authenticator",
    "ClientSettings",
    "CredentialStore",
    "PkceSession",
    "RedirectListener",
    "TokenRecord",
    "code_challenge_s256",
    "generate_code_verifier",
]
