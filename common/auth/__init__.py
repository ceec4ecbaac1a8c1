"""
Authentication module - Device biometric gateway and PIN hashing.
"""

from common.auth.pin_hasher import PinHasher
from common.auth.biometric import (
    BiometricGateway,
    BiometricResult,
    StaticBiometricGateway,
    USER_CANCEL,
)

__all__ = [
    "BiometricGateway",
    "BiometricResult",
    "PinHasher",
    "StaticBiometricGateway",
    "USER_CANCEL",
]
