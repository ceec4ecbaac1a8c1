"""Backend auth endpoint paths."""

ME = "/auth/me"
UNIFIED_LOGIN = "/auth/unified-login"
PIN_LOGIN = "/auth/pin-login"
BIOMETRIC_LOGIN = "/auth/biometric-login"
BIOMETRIC_ENROLL = "/auth/biometric/enroll"
REFRESH = "/auth/refresh"
LOGOUT = "/auth/logout"
AVAILABLE_PROFILES = "/auth/available-profiles"
SWITCH_PROFILE = "/auth/switch-profile"
