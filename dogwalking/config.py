import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

DATABASE_PATH = os.getenv("DATABASE_PATH", "dogwalking.db")
SECRET_KEY = os.getenv("SECRET_KEY", "dogwalking-dev-secret")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Upper bound for waiting on a locked SQLite database during fetches
SQLITE_BUSY_TIMEOUT_MS = int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000"))

# Business details printed on invoices
BUSINESS_NAME = os.getenv("BUSINESS_NAME", "Katie's Canines")
BUSINESS_ADDRESS = os.getenv("BUSINESS_ADDRESS", "123 Paw Street")
BUSINESS_CITY = os.getenv("BUSINESS_CITY", "Dogtown")
BUSINESS_STATE = os.getenv("BUSINESS_STATE", "CA")
BUSINESS_ZIP = os.getenv("BUSINESS_ZIP", "90210")
BUSINESS_PHONE = os.getenv("BUSINESS_PHONE", "(555) 123-4567")
BUSINESS_EMAIL = os.getenv("BUSINESS_EMAIL", "info@katiescanines.com")

INVOICE_DUE_DAYS = int(os.getenv("INVOICE_DUE_DAYS", "15"))

# How many scheduled walks the "mark test walks completed" endpoint touches
TEST_SAMPLE_SIZE = int(os.getenv("TEST_SAMPLE_SIZE", "3"))


def as_dict() -> dict:
    return {
        "DATABASE_PATH": DATABASE_PATH,
        "SECRET_KEY": SECRET_KEY,
        "LOG_LEVEL": LOG_LEVEL,
        "SQLITE_BUSY_TIMEOUT_MS": SQLITE_BUSY_TIMEOUT_MS,
        "BUSINESS_NAME": BUSINESS_NAME,
        "BUSINESS_ADDRESS": BUSINESS_ADDRESS,
        "BUSINESS_CITY": BUSINESS_CITY,
        "BUSINESS_STATE": BUSINESS_STATE,
        "BUSINESS_ZIP": BUSINESS_ZIP,
        "BUSINESS_PHONE": BUSINESS_PHONE,
        "BUSINESS_EMAIL": BUSINESS_EMAIL,
        "INVOICE_DUE_DAYS": INVOICE_DUE_DAYS,
        "TEST_SAMPLE_SIZE": TEST_SAMPLE_SIZE,
    }
