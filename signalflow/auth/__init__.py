from .access_token import AccessClaims, AccessTokenSigner

__all__ = ["AccessClaims", "AccessTokenSigner"]
