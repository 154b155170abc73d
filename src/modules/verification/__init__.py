"""UNVERIFIED -> PURGATORY -> VERIFIED identity verification."""

from .service import STATE_CHANGED, Sighting, VerificationRecord, VerificationService

__all__ = [
    "STATE_CHANGED",
    "Sighting",
    "VerificationRecord",
    "VerificationService",
]
