"""
Domain constants used across services/routers.
"""

# Download entitlements
DOWNLOAD_VALIDITY_DAYS = 15
DOWNLOAD_MAX_REDEMPTIONS = 10
DOWNLOAD_TOKEN_BYTES = 32  # 256 bits, hex-encoded to 64 chars

# Single-currency storefront; all amounts are integer cents
CURRENCY = "usd"

# Notification types queued on order completion
NOTIFICATION_ORDER_CONFIRMATION = "ORDER_CONFIRMATION"
STORE_NAME = "ExamVault"
