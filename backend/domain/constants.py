"""
Domain constants used across services/routers.
"""

# PayPal Orders v2 vocabulary
GATEWAY_STATUS_COMPLETED = "COMPLETED"
GATEWAY_ISSUE_ALREADY_CAPTURED = "ORDER_ALREADY_CAPTURED"
GATEWAY_TEXT_LIMIT = 127  # max length of item name/description

# Client total may differ from the catalog re-price by at most this much
TOTAL_TOLERANCE = 0.01

# Customer order history only shows orders that went through checkout
VISIBLE_ORDER_STATUSES = ("completed", "processing")

PROVISIONAL_CHECKOUT_MESSAGE = (
    "We're processing your order. We'll confirm once the payment is verified."
)
