import os

from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
PORT = int(os.getenv("PORT", 8000))

# Database
DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "tantika")

# Auth settings
SECRET_KEY = os.getenv("SECRET_KEY", "secret-key-change-me")
ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24 * 7))
COOKIE_NAME = "token"
COOKIE_SECURE = _flag("COOKIE_SECURE", "true" if ENVIRONMENT == "production" else "false")
BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", 10))
PASSWORD_MIN_LENGTH = 8
RESET_TOKEN_EXPIRE_MINUTES = 30

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

# Pricing (INR)
GST_RATE = 0.18
FREE_SHIPPING_THRESHOLD = 500
FLAT_SHIPPING_COST = 40
CURRENCY = "INR"

# Payouts
MIN_PAYOUT_AMOUNT = float(os.getenv("MIN_PAYOUT_AMOUNT", 500))
PAYOUT_FEE_RATE = 0.02
PAYOUT_MIN_FEE = 10
PAYOUT_FEE_GST_RATE = 0.18

# Catalogue
LOW_STOCK_THRESHOLD = 5

# Notifications expire through the TTL index on expiresAt
NOTIFICATION_TTL_DAYS = 30
