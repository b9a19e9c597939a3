"""
Skypack protocol constants.

Request kinds are opaque to the transport; they only take part in the
correlation key of an exchange.
"""

# Network
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 41263  # Device UDP port
DEFAULT_BIND_HOST = "0.0.0.0"
DEFAULT_BIND_PORT = 0  # Ephemeral

# Request kinds
KIND_TELEMETRY = 9  # Telemetry query
KIND_SET_TARGET = 46  # Target state update (precision landing zone)

# Retry policy
MAX_ATTEMPTS = 3
ATTEMPT_TIMEOUT = 1.0  # Seconds to wait for a reply per attempt

# Field ranges
U32_MAX = 0xFFFFFFFF
U64_MAX = 0xFFFFFFFFFFFFFFFF
I32_MIN = -(2**31)
I32_MAX = 2**31 - 1
