# fuel_dispatch/config.py
import os
import logging
from decimal import Decimal

from dotenv import load_dotenv

load_dotenv()

# ───────────────────────────────────────────────────────────
# Environment
# ───────────────────────────────────────────────────────────
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./fuel_dispatch.db")

JWT_SECRET = os.getenv("JWT_SECRET", "demo_secret")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")

STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "")
PAYMENT_CURRENCY = os.getenv("PAYMENT_CURRENCY", "inr")

USER_SERVICE_URL = os.getenv("USER_SERVICE_URL", "http://user-service:8001")

USE_AWS = os.getenv("USE_AWS", "False").lower() in ("true", "1", "yes")
AWS_REGION = os.getenv("AWS_REGION", "us-east-1")
ORDER_EVENTS_QUEUE_URL = os.getenv("ORDER_EVENTS_QUEUE_URL")

CLIENT_URL = os.getenv("CLIENT_URL", "http://localhost:3000")

# ───────────────────────────────────────────────────────────
# Pricing / dispatch policy
# ───────────────────────────────────────────────────────────
FUEL_PRICES = {
    "petrol": Decimal(os.getenv("PETROL_PRICE", "95.50")),
    "diesel": Decimal(os.getenv("DIESEL_PRICE", "89.75")),
}
DELIVERY_FEE = Decimal(os.getenv("DELIVERY_FEE", "50"))
TAX_PERCENT = Decimal(os.getenv("TAX_PERCENT", "18"))

ORDER_NUMBER_PREFIX = os.getenv("ORDER_NUMBER_PREFIX", "FD")
DEFAULT_ETA_MINUTES = int(os.getenv("DEFAULT_ETA_MINUTES", "60"))
EN_ROUTE_ETA_MINUTES = int(os.getenv("EN_ROUTE_ETA_MINUTES", "30"))
DEFAULT_SEARCH_RADIUS_KM = float(os.getenv("DEFAULT_SEARCH_RADIUS_KM", "10"))

# ───────────────────────────────────────────────────────────
# Logging
# ───────────────────────────────────────────────────────────
LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"


def get_logger(name: str) -> logging.Logger:
    logger = logging.getLogger(name)
    logger.setLevel(logging.INFO)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)
    return logger
