"""Event names published on the core's EventBus."""

# Network layer: refresh token rejected. Args: reason
SESSION_EXPIRED = "session_expired"

# AppLockService. Args: reason
APP_LOCKED = "app_locked"
APP_UNLOCKED = "app_unlocked"

# ProfileSwitchOrchestrator. Args: session (SessionData)
PROFILE_SWITCHED = "profile_switched"

# AccountSwitcher. Args: session (SessionData)
ACCOUNT_SWITCHED = "account_switched"

# Logout pipeline. Args: none
LOGGED_OUT = "logged_out"
