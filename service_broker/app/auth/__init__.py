"""
Identity verification for the broker.
"""

from .oidc import GOOGLE_ISSUER, IdentityClaims, OIDCVerifier

__all__ = [
    "GOOGLE_ISSUER",
    "IdentityClaims",
    "OIDCVerifier",
]
