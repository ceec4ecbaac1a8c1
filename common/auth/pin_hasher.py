"""
bcrypt hashing for short numeric secrets (app-lock PINs).

Only the hash is ever persisted.
"""

import bcrypt as bcrypt_lib


class PinHasher:
    """Hash and verify PINs with bcrypt."""

    def __init__(self, rounds: int = 12):
        self._rounds = rounds

    def hash_pin(self, pin: str) -> str:
        salt = bcrypt_lib.gensalt(rounds=self._rounds)
        return bcrypt_lib.hashpw(pin.encode("utf-8"), salt).decode("utf-8")

    def verify_pin(self, pin: str, hashed: str) -> bool:
        try:
            return bcrypt_lib.checkpw(pin.encode("utf-8"), hashed.encode("utf-8"))
        except ValueError:
            # Stored value is not a bcrypt hash
            return False
