from __future__ import annotations

from typing import Optional

from fastapi import HTTPException

# Well-known accounts the posting engine writes to. Supplier payables are per supplier
# ("Payable - <supplier>") and resolved by name like everything else.
INVENTORY = "Inventory"
GST_INPUT = "GST Input"
ROUND_OFF = "Round Off"
ACCOUNTS_PAYABLE = "Accounts Payable"
INVENTORY_ADJUSTMENT = "Inventory Adjustment"
PAYMENT_ACCOUNTS = {"cash": "Cash", "bank": "Bank", "upi": "UPI"}

DEFAULT_ACCOUNT_TYPES = {
    INVENTORY.lower(): "ASSET",
    GST_INPUT.lower(): "ASSET",
    ROUND_OFF.lower(): "EXPENSE",
    ACCOUNTS_PAYABLE.lower(): "LIABILITY",
    INVENTORY_ADJUSTMENT.lower(): "EXPENSE",
    "cash": "ASSET",
    "bank": "ASSET",
    "upi": "ASSET",
}


def normalize_account_name(name: Optional[str]) -> str:
    return " ".join(str(name or "").split())


def payable_account_name(supplier_name: Optional[str]) -> str:
    n = normalize_account_name(supplier_name)
    return f"Payable - {n}" if n else ACCOUNTS_PAYABLE


def default_account_type(name: str) -> Optional[str]:
    key = normalize_account_name(name).lower()
    if key.startswith("payable - "):
        return "LIABILITY"
    return DEFAULT_ACCOUNT_TYPES.get(key)


def get_account(cur, clinic_id: str, account_id: str) -> dict:
    cur.execute(
        """
        SELECT id, name, type
        FROM accounts
        WHERE clinic_id = %s AND id = %s
        """,
        (clinic_id, account_id),
    )
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="account not found")
    return row


def find_account_by_name(cur, clinic_id: str, name: str) -> Optional[dict]:
    cur.execute(
        """
        SELECT id, name, type
        FROM accounts
        WHERE clinic_id = %s AND lower(name) = lower(%s)
        """,
        (clinic_id, name),
    )
    return cur.fetchone()


def resolve_account(
    cur,
    clinic_id: str,
    name: str,
    *,
    account_type: Optional[str] = None,
    user_id: Optional[str] = None,
) -> dict:
    """
    Find-or-create an account by case-insensitive name.

    Concurrent creators race on the unique (clinic_id, lower(name)) index; the loser's
    insert is a no-op and it re-reads the winner's row, so both end up with one id.
    """
    clean = normalize_account_name(name)
    if not clean:
        raise HTTPException(status_code=400, detail="account name is required")
    row = find_account_by_name(cur, clinic_id, clean)
    if row:
        return row
    cur.execute(
        """
        INSERT INTO accounts (id, clinic_id, name, type, created_by_user_id)
        VALUES (gen_random_uuid(), %s, %s, %s, %s)
        ON CONFLICT (clinic_id, (lower(name))) DO NOTHING
        RETURNING id, name, type
        """,
        (clinic_id, clean, account_type or default_account_type(clean), user_id),
    )
    row = cur.fetchone()
    if row:
        return row
    row = find_account_by_name(cur, clinic_id, clean)
    if not row:
        raise RuntimeError(f"account {clean!r} vanished after insert conflict")
    return row


def create_account(cur, clinic_id: str, name: str, account_type: Optional[str], user_id: Optional[str]) -> dict:
    clean = normalize_account_name(name)
    if not clean:
        raise HTTPException(status_code=400, detail="account name is required")
    cur.execute(
        """
        INSERT INTO accounts (id, clinic_id, name, type, created_by_user_id)
        VALUES (gen_random_uuid(), %s, %s, %s, %s)
        ON CONFLICT (clinic_id, (lower(name))) DO NOTHING
        RETURNING id, name, type
        """,
        (clinic_id, clean, account_type or default_account_type(clean), user_id),
    )
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=409, detail="account already exists")
    return row


def search_accounts(cur, clinic_id: str, q: str = "", limit: int = 50) -> list[dict]:
    needle = (q or "").strip()
    cur.execute(
        """
        SELECT id, name, type, created_at
        FROM accounts
        WHERE clinic_id = %s
          AND (%s = '' OR name ILIKE %s)
        ORDER BY lower(name)
        LIMIT %s
        """,
        (clinic_id, needle, f"%{needle}%", max(1, min(int(limit or 50), 500))),
    )
    return cur.fetchall()
