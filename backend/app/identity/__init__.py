"""Participant identity (persistent pseudonymous handle per device profile)."""
from .service import IDENTITY_STORAGE_KEY, IdentityProvider

__all__ = ["IDENTITY_STORAGE_KEY", "IdentityProvider"]
