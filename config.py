import os

# Environment
DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_ALG = "HS256"
JWT_EXPIRES_MINUTES = int(os.getenv("JWT_EXPIRES_MINUTES", 60 * 24))

STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Login lockout
MAX_LOGIN_ATTEMPTS = int(os.getenv("MAX_LOGIN_ATTEMPTS", 5))
LOCK_MINUTES = int(os.getenv("LOCK_MINUTES", 120))

# Pricing
CURRENCY = os.getenv("CURRENCY", "USD")
TAX_RATE = float(os.getenv("TAX_RATE", 0.08))
FREE_SHIPPING_THRESHOLD = float(os.getenv("FREE_SHIPPING_THRESHOLD", 100))
SHIPPING_RATES = {
    "standard": float(os.getenv("SHIPPING_STANDARD_RATE", 10)),
    "express": float(os.getenv("SHIPPING_EXPRESS_RATE", 25)),
    "overnight": float(os.getenv("SHIPPING_OVERNIGHT_RATE", 50)),
    "free": 0.0,
}

# Support SLA targets in hours, keyed by ticket priority
SUPPORT_SLA_HOURS = {
    "urgent": int(os.getenv("SLA_URGENT_HOURS", 4)),
    "high": int(os.getenv("SLA_HIGH_HOURS", 24)),
    "medium": int(os.getenv("SLA_MEDIUM_HOURS", 48)),
    "low": int(os.getenv("SLA_LOW_HOURS", 72)),
}

AUDIT_RETENTION_DAYS = int(os.getenv("AUDIT_RETENTION_DAYS", 365))
