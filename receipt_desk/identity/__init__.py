"""Identity package: user profiles and the sign-in whitelist."""

from receipt_desk.identity.resolver import IdentityResolver, UnknownPrincipalError
from receipt_desk.identity.whitelist import WhitelistGate

__all__ = [
    "IdentityResolver",
    "UnknownPrincipalError",
    "WhitelistGate",
]
