import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./backoffice.db")

# Public links (proposal view pages are reached by customers via token)
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "http://localhost:3000").rstrip("/")

# Bill.com Configuration
BILLCOM_API_URL = os.getenv("BILLCOM_API_URL", "https://api.bill.com/api/v2").rstrip("/")
BILLCOM_DEV_KEY = os.getenv("BILLCOM_DEV_KEY")
BILLCOM_USERNAME = os.getenv("BILLCOM_USERNAME")
BILLCOM_PASSWORD = os.getenv("BILLCOM_PASSWORD")
BILLCOM_ORG_ID = os.getenv("BILLCOM_ORG_ID")
# Customer-facing invoice page, invoice id is appended
BILLCOM_INVOICE_URL_BASE = os.getenv("BILLCOM_INVOICE_URL_BASE", "https://app.bill.com/Invoice")
BILLCOM_INVOICE_DUE_DAYS = int(os.getenv("BILLCOM_INVOICE_DUE_DAYS", "30"))

# Settlement pipeline
# User recorded as created_by on auto-created jobs
SETTLEMENT_CREATED_BY_USER_ID = os.getenv("SETTLEMENT_CREATED_BY_USER_ID")
ADDRESS_MATCH_MIN_SCORE = float(os.getenv("ADDRESS_MATCH_MIN_SCORE", "0.9"))
JOB_NUMBER_MAX_ATTEMPTS = int(os.getenv("JOB_NUMBER_MAX_ATTEMPTS", "3"))
JOB_NUMBER_RETRY_BACKOFF_SECONDS = float(os.getenv("JOB_NUMBER_RETRY_BACKOFF_SECONDS", "0.1"))
EXTERNAL_CALL_TIMEOUT_SECONDS = float(os.getenv("EXTERNAL_CALL_TIMEOUT_SECONDS", "30"))

# Sales tax
DEFAULT_TAX_STATE = os.getenv("DEFAULT_TAX_STATE", "NC")
STATE_TAX_RATE = os.getenv("STATE_TAX_RATE", "0.0475")  # Kept as str for Decimal
DEFAULT_COUNTY_TAX_RATE = os.getenv("DEFAULT_COUNTY_TAX_RATE", "0.02")
