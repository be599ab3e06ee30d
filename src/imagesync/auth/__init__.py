"""Identity providers for gating sync cycles on a signed-in user."""

from imagesync.auth.identity import (
    Identity,
    IdentityProvider,
    RestIdentityProvider,
    static_identity,
)

__all__ = [
    "Identity",
    "IdentityProvider",
    "RestIdentityProvider",
    "static_identity",
]
