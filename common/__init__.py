"""
Common library for reusable infrastructure components.

This package provides generic modules that can be used across projects:

- auth: Biometric gateway interface
- config: Base settings class and logging setup
- events: In-process event bus
- storage: Token, key-value and PIN-record store interfaces
- utils: Standard responses and HTTP exceptions
"""

from common.auth import BiometricGateway, BiometricResult, StaticBiometricGateway
from common.config import BaseAppSettings, configure_logging
from common.events import EventBus
from common.storage import (
    KeyValueStore,
    ProfilePinStore,
    TokenStore,
    StorageCorruptionError,
    InMemoryKeyValueStore,
    InMemoryProfilePinStore,
    InMemoryTokenStore,
)
from common.utils import (
    success_response,
    error_response,
    APIException,
    UnauthorizedException,
    ForbiddenException,
    NotFoundException,
)

__all__ = [
    # Auth
    "BiometricGateway",
    "BiometricResult",
    "StaticBiometricGateway",
    # Config
    "BaseAppSettings",
    "configure_logging",
    # Events
    "EventBus",
    # Storage
    "KeyValueStore",
    "ProfilePinStore",
    "TokenStore",
    "StorageCorruptionError",
    "InMemoryKeyValueStore",
    "InMemoryProfilePinStore",
    "InMemoryTokenStore",
    # Utils
    "success_response",
    "error_response",
    "APIException",
    "UnauthorizedException",
    "ForbiddenException",
    "NotFoundException",
]
