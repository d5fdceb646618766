from __future__ import annotations
import os
from pathlib import Path

# --- Paths ---
ROOT_DIR = Path(__file__).resolve().parents[1]
DATA_DIR = Path(os.environ.get("BOOKSTORE_DATA_DIR") or ROOT_DIR / "data")

# --- Logging ---
LOG_LEVEL = os.environ.get("BOOKSTORE_LOG_LEVEL", "INFO").upper()

# --- JSON store ---
BACKUP_ENABLED = os.environ.get("BOOKSTORE_BACKUP_ENABLED", "1") not in ("0", "false", "False", "")
BACKUP_KEEP = int(os.environ.get("BOOKSTORE_BACKUP_KEEP", "5"))

# --- Reconciliation ---
# Max distance (days) between a cash sale and a "payment from customer" record
# for the two to be treated as the same economic event.
DUPLICATE_WINDOW_DAYS = int(os.environ.get("BOOKSTORE_DUPLICATE_WINDOW_DAYS", "1"))

# Labels written by the workflows and recognised by the aggregator
CUSTOMER_PAYMENT_PREFIX = "Payment from customer"
SALE_DUE_PREFIX = "Due from"
OFFICE_ASSET_CATEGORY = "Office Asset"
INITIAL_CAPITAL_SOURCE = "Initial Capital"
INTERNAL_TRANSFER_DONOR = "Internal Transfer"
SALE_NUMBER_PREFIX = "SALE-"
PURCHASE_NUMBER_PREFIX = "PUR-"
RETURN_NUMBER_PREFIX = "RTN-"
OPENING_BALANCE_LABEL = "Opening balance"
RETURN_CREDIT_PREFIX = "Credit for"
# Books bought in without a selling price are priced at cost * markup
DEFAULT_MARKUP = 1.5
