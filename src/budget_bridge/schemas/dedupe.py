"""
Dedupe key generation for budget submissions.

The budgeting service deduplicates on ``import_id``. This module is the only
place that builds one, so resubmitting the same transaction can never create
a second entry on the remote side.

Format: ``BB:{YYYYMMDD}:{amount_milliunits}:{hash[:8]}``
- BB = marker for transactions created by this pipeline
- amount in milliunits (1/1000 of the currency unit), signed
- hash = SHA256(source_account|provider_transaction_id)[:8]

The import_id must be:
- Stable: same transaction always yields the same id
- Short: the budgeting service caps it at 36 characters
"""

import hashlib
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal

# ============================================================================
# Constants
# ============================================================================

IMPORT_ID_SEPARATOR = ":"
IMPORT_ID_MARKER = "BB"
HASH_PREFIX_LENGTH = 8
MAX_IMPORT_ID_LENGTH = 36

MILLIUNITS = Decimal(1000)


def to_milliunits(amount: Decimal | str | float) -> int:
    """
    Convert a currency amount to integer milliunits.

    Args:
        amount: Amount as Decimal, string (comma or dot decimal separator) or float

    Returns:
        Signed integer milliunits, rounded half-up
    """
    if isinstance(amount, str):
        amount = Decimal(amount.replace(",", "."))
    elif isinstance(amount, float):
        amount = Decimal(str(amount))
    elif not isinstance(amount, Decimal):
        raise ValueError(f"amount must be Decimal, str, or float, got: {type(amount)}")

    return int((amount * MILLIUNITS).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def compute_identity_hash(source_account_id: str, provider_transaction_id: str) -> str:
    """SHA256 over the composite transaction id."""
    canonical = f"{source_account_id.strip()}|{provider_transaction_id.strip()}"
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def generate_import_id(
    source_account_id: str,
    provider_transaction_id: str,
    amount: Decimal | str | float,
    tx_date: date | str,
) -> str:
    """
    Generate the deterministic import_id for a transaction.

    Examples:
        >>> generate_import_id("acc-1", "2345", Decimal("-10.99"), date(2025, 4, 10))
        'BB:20250410:-10990:...'  # 8 hex chars of the identity hash
    """
    if not source_account_id or not provider_transaction_id:
        raise ValueError("source_account_id and provider_transaction_id are required")

    if isinstance(tx_date, datetime):
        tx_date = tx_date.date()
    if isinstance(tx_date, date):
        date_str = tx_date.strftime("%Y%m%d")
    else:
        date_str = tx_date.strip().replace("-", "")
    if len(date_str) != 8 or not date_str.isdigit():
        raise ValueError(f"date must be YYYY-MM-DD or YYYYMMDD, got: {tx_date}")

    milliunits = to_milliunits(amount)
    hash_prefix = compute_identity_hash(source_account_id, provider_transaction_id)[
        :HASH_PREFIX_LENGTH
    ]

    import_id = IMPORT_ID_SEPARATOR.join(
        [IMPORT_ID_MARKER, date_str, str(milliunits), hash_prefix]
    )
    if len(import_id) > MAX_IMPORT_ID_LENGTH:
        raise ValueError(f"import_id exceeds {MAX_IMPORT_ID_LENGTH} characters: {import_id}")
    return import_id


def is_bridge_import_id(import_id: str | None) -> bool:
    """Check if an import_id was generated by this pipeline."""
    if not import_id:
        return False
    return import_id.startswith(IMPORT_ID_MARKER + IMPORT_ID_SEPARATOR)
