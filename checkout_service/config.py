import os
from decimal import Decimal

# Database connection string. Defaults to a local SQLite file for development.
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./checkout.db")

# How long a checkout session stays payable before the sweep expires it.
CHECKOUT_SESSION_TTL_MINUTES = int(os.getenv("CHECKOUT_SESSION_TTL_MINUTES", "30"))

# Hosted checkout provider (iyzico checkout form API).
IYZICO_API_KEY = os.getenv("IYZICO_API_KEY", "")
IYZICO_SECRET_KEY = os.getenv("IYZICO_SECRET_KEY", "")
IYZICO_BASE_URL = os.getenv("IYZICO_BASE_URL", "https://sandbox-api.iyzipay.com")
GATEWAY_TIMEOUT_SECONDS = float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "30"))
GATEWAY_INIT_RETRIES = int(os.getenv("GATEWAY_INIT_RETRIES", "2"))

# Public URL the gateway redirects the customer back to.
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "http://localhost:8000")
PAYMENT_SUCCESS_PATH = "/payment/success"
PAYMENT_FAILURE_PATH = "/payment/failure"

# Shared secret for the auth-token JWT issued by the authentication layer.
JWT_SECRET = os.getenv("JWT_SECRET", "fallback-secret-key")
JWT_ALGORITHM = "HS256"
AUTH_COOKIE_NAME = "auth-token"

# Message broker used for fire-and-forget notifications.
RABBITMQ_HOST = os.getenv("RABBITMQ_HOST", "rabbitmq")
EVENTS_EXCHANGE = "events"

# Background sweep of stale checkout sessions.
ENABLE_SWEEPER = os.getenv("ENABLE_SWEEPER", "0").strip() in {"1", "true", "True", "yes"}
SWEEP_INTERVAL_SECONDS = int(os.getenv("SWEEP_INTERVAL_SECONDS", "60"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

SUPPORTED_CURRENCIES = ("TRY", "USD")
DOMESTIC_COUNTRIES = {"türkiye", "turkiye", "turkey", "tr"}

# Used when the store_settings table has no row yet.
DEFAULT_SHIPPING_RATES = {
    ("domestic", "TRY"): Decimal(os.getenv("DEFAULT_DOMESTIC_SHIPPING_TRY", "200")),
    ("domestic", "USD"): Decimal(os.getenv("DEFAULT_DOMESTIC_SHIPPING_USD", "5")),
    ("international", "TRY"): Decimal(os.getenv("DEFAULT_INTERNATIONAL_SHIPPING_TRY", "1000")),
    ("international", "USD"): Decimal(os.getenv("DEFAULT_INTERNATIONAL_SHIPPING_USD", "30")),
}
DEFAULT_EMBROIDERY_PRICE = {"TRY": Decimal("0"), "USD": Decimal("0")}
