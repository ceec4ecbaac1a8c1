"""
Biometric hardware gateway interface.

Abstracts Face ID / Touch ID / fingerprint prompts so callers can check
availability before ever showing a prompt.

Example:
    gateway: BiometricGateway = ...
    if await gateway.has_hardware() and await gateway.is_enrolled():
        result = await gateway.authenticate("Unlock your wallet")
        if result.success:
            ...
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional


# Error identifiers a gateway may report
USER_CANCEL = "user_cancel"
AUTHENTICATION_FAILED = "authentication_failed"
NOT_ENROLLED = "not_enrolled"
NOT_AVAILABLE = "not_available"
LOCKOUT = "lockout"


@dataclass(frozen=True)
class BiometricResult:
    """Outcome of one biometric prompt."""
    success: bool
    error: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self.error == USER_CANCEL


class BiometricGateway(ABC):
    """
    Abstract biometric device.

    All methods are async since platform APIs are.
    """

    @abstractmethod
    async def has_hardware(self) -> bool:
        """Whether the device has a biometric sensor."""
        pass

    @abstractmethod
    async def is_enrolled(self) -> bool:
        """Whether the user has enrolled at least one biometric."""
        pass

    @abstractmethod
    async def authenticate(self, prompt_message: str) -> BiometricResult:
        """
        Prompt the user.

        Args:
            prompt_message: Text shown in the system prompt

        Returns:
            BiometricResult; a cancelled prompt has error USER_CANCEL
        """
        pass

    async def is_available(self) -> bool:
        """Hardware present and enrolled."""
        return await self.has_hardware() and await self.is_enrolled()


class StaticBiometricGateway(BiometricGateway):
    """
    Gateway with fixed answers.

    Useful for simulators and headless runs. Every prompt is recorded in
    ``prompts`` so callers can tell whether hardware was ever touched.
    """

    def __init__(
        self,
        has_hardware: bool = True,
        enrolled: bool = True,
        result: Optional[BiometricResult] = None,
    ):
        self.hardware = has_hardware
        self.enrolled = enrolled
        self.result = result or BiometricResult(success=True)
        self.prompts: List[str] = []

    async def has_hardware(self) -> bool:
        return self.hardware

    async def is_enrolled(self) -> bool:
        return self.enrolled

    async def authenticate(self, prompt_message: str) -> BiometricResult:
        self.prompts.append(prompt_message)
        if not self.hardware:
            return BiometricResult(success=False, error=NOT_AVAILABLE)
        if not self.enrolled:
            return BiometricResult(success=False, error=NOT_ENROLLED)
        return self.result
