import os
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent.parent
DB_PATH = Path(os.getenv("CAMP_INVENTORY_DB", PROJECT_ROOT / "db" / "inventory.sqlite"))
REPORTS_DIR = PROJECT_ROOT / "reports"

# Reset is gated in the dashboard, not in the ledger
RESET_PASSWORD = os.getenv("CAMP_RESET_PASSWORD", "").strip()

# seed the four demo batches on first load / reset
SEED_SAMPLE_DATA = os.getenv("CAMP_SEED_SAMPLE_DATA", "0").strip().lower() in ("1", "true", "yes")

EXPIRY_WINDOW_DAYS = int(os.getenv("CAMP_EXPIRY_WINDOW_DAYS", "60"))
LOG_LEVEL = os.getenv("CAMP_LOG_LEVEL", "INFO").upper()

# Business rules
DEFAULT_PURCHASE_PRICE = 1.0
DEFAULT_LOW_STOCK_THRESHOLD = 5
MIN_NAME_LENGTH = 2                 # generic name, patient name, restock source
MIN_ADJUST_REASON_LENGTH = 5
MAX_ADJUST_REASON_LENGTH = 200
MIN_VILLAGE_NAME_LENGTH = 2
MAX_VILLAGE_NAME_LENGTH = 100
SEX_CHOICES = ("Male", "Female", "Other")
