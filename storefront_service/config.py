"""
config.py — Environment Configuration for the Storefront Service

All settings are read once from the process environment. A local `.env`
file is loaded first but never overrides variables that are already set,
so test runs and container deployments can inject their own values.
"""

import os

from dotenv import load_dotenv

load_dotenv(".env", override=False)

# Database
DB_URL = os.environ.get("DB_URL", "sqlite+aiosqlite:///storefront.db")

# Session tokens
AUTH_SECRET = os.environ.get("AUTH_SECRET", "change-me-in-production")
TOKEN_TTL_SECONDS = int(os.environ.get("TOKEN_TTL_SECONDS", "0"))  # 0 = no expiry
MIN_PASSWORD_LENGTH = int(os.environ.get("MIN_PASSWORD_LENGTH", "6"))
PASSWORD_HASH_ITERATIONS = int(os.environ.get("PASSWORD_HASH_ITERATIONS", "120000"))

# M-Pesa Daraja
MPESA_API_BASE = os.environ.get("MPESA_API_BASE", "https://sandbox.safaricom.co.ke")
MPESA_CONSUMER_KEY = os.environ.get("MPESA_CONSUMER_KEY", "")
MPESA_CONSUMER_SECRET = os.environ.get("MPESA_CONSUMER_SECRET", "")
MPESA_SHORTCODE = os.environ.get("MPESA_SHORTCODE", "174379")
MPESA_PASSKEY = os.environ.get("MPESA_PASSKEY", "")
MPESA_CALLBACK_URL = os.environ.get("MPESA_CALLBACK_URL", "http://localhost:8000/api/payments/callback")
MPESA_TRANSACTION_DESC = os.environ.get("MPESA_TRANSACTION_DESC", "Chelky Threads Order")

# Checkout behaviour
PAYMENT_POLL_INTERVAL_SECONDS = float(os.environ.get("PAYMENT_POLL_INTERVAL_SECONDS", "2"))
PAYMENT_POLL_MAX_ATTEMPTS = int(os.environ.get("PAYMENT_POLL_MAX_ATTEMPTS", "60"))  # 60 x 2s = 120s window
MANUAL_VERIFY_DELAY_SECONDS = float(os.environ.get("MANUAL_VERIFY_DELAY_SECONDS", "2.5"))
MIN_TRANSACTION_CODE_LENGTH = int(os.environ.get("MIN_TRANSACTION_CODE_LENGTH", "10"))
STANDARD_DELIVERY_FEE = int(os.environ.get("STANDARD_DELIVERY_FEE", "300"))
BUSINESS_PAYBILL = os.environ.get("BUSINESS_PAYBILL", "6514541")

# Logging
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
LOG_FILE = os.environ.get("LOG_FILE", "storefront.log")  # empty string disables the file handler
