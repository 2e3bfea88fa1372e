"""
Provider access token minting.
"""

from .service_account import (
    DEFAULT_LIFETIME,
    GOOGLE_TOKEN_URI,
    MintedAccessToken,
    ServiceAccountCredentials,
    ServiceAccountTokenMinter,
    remaining_lifetime,
)

__all__ = [
    "DEFAULT_LIFETIME",
    "GOOGLE_TOKEN_URI",
    "MintedAccessToken",
    "ServiceAccountCredentials",
    "ServiceAccountTokenMinter",
    "remaining_lifetime",
]
