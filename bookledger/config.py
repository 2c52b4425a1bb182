import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./bookledger.db")

# PayTR iFrame API
PAYTR_API_URL = os.getenv("PAYTR_API_URL", "https://www.paytr.com/odeme/api/get-token")
PAYTR_STATUS_URL = os.getenv("PAYTR_STATUS_URL", "https://www.paytr.com/odeme/durum-sorgu")
PAYTR_IFRAME_URL = os.getenv("PAYTR_IFRAME_URL", "https://www.paytr.com/odeme/guvenli/")
PAYTR_MERCHANT_ID = os.getenv("PAYTR_MERCHANT_ID", "")
PAYTR_MERCHANT_KEY = os.getenv("PAYTR_MERCHANT_KEY", "")
PAYTR_MERCHANT_SALT = os.getenv("PAYTR_MERCHANT_SALT", "")
# "1" for test, "0" for production
PAYTR_TEST_MODE = os.getenv("PAYTR_TEST_MODE", "1")
PAYTR_TIMEOUT_SECONDS = float(os.getenv("PAYTR_TIMEOUT_SECONDS", "30"))
PAYTR_DEFAULT_CURRENCY = os.getenv("PAYTR_DEFAULT_CURRENCY", "TL")

# Base URL used to build merchant_ok_url / merchant_fail_url
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "http://localhost:8000")

# Pending payments older than this are reported as stale by the reconciler
STALE_PAYMENT_MINUTES = int(os.getenv("STALE_PAYMENT_MINUTES", "30"))

SEED_DEMO_DATA = os.getenv("SEED_DEMO_DATA", "false").lower() == "true"
