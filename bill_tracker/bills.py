import re
import uuid
from datetime import date, datetime, timezone

from dateutil.relativedelta import relativedelta

from .db import DATABASE_ERRORS


class BillStoreError(RuntimeError):
    """Raised when reading or writing bills fails at the database level."""


TRANSACTION_TYPES = ("income", "expense")
BILL_CATEGORIES = (
    "salary",
    "freelance",
    "investment",
    "gift",
    "market",
    "food",
    "transport",
    "health",
    "education",
    "study",
    "entertainment",
    "utilities",
    "rent",
    "insurance",
    "shopping",
    "travel",
    "office",
    "other",
)
PAYMENT_METHODS = (
    "credit_card",
    "debit_card",
    "pix",
    "cash",
    "boleto",
    "transfer",
    "bank_slip",
    "other",
)
DEFAULT_MAX_INSTALLMENTS = 48
MONTH_PATTERN = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")
BILL_FIELDS = (
    "user_id",
    "name",
    "description",
    "amount",
    "transaction_type",
    "date",
    "category",
    "payment_method",
    "installment_number",
    "total_installments",
    "parent_transaction_id",
    "is_recurring",
    "is_essential",
)
EXPORT_HEADER = ["date", "name", "amount", "transaction_type", "category", "payment_method"]


def utc_now_text():
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def resolve_month(value, today=None):
    cleaned = (value or "").strip()
    if MONTH_PATTERN.match(cleaned):
        return cleaned
    return (today or date.today()).strftime("%Y-%m")


def shift_month(month, delta):
    first = datetime.strptime(f"{month}-01", "%Y-%m-%d").date()
    return (first + relativedelta(months=delta)).strftime("%Y-%m")


def summarize_bills(bills):
    income = sum(bill["amount"] for bill in bills if bill["transaction_type"] == "income")
    expense = sum(bill["amount"] for bill in bills if bill["transaction_type"] == "expense")
    return {"income": round(income, 2), "expense": round(expense, 2), "balance": round(income - expense, 2)}


def _is_checked(value):
    return (value or "").strip().lower() in {"1", "on", "true", "yes"}


def validate_bill_form(form, with_installments=True, max_installments=DEFAULT_MAX_INSTALLMENTS):
    """Validate a submitted bill form.

    Returns ``(values, errors)``; ``values`` is only complete when ``errors``
    is empty.
    """
    errors = []
    values = {
        "name": (form.get("name") or "").strip(),
        "description": (form.get("description") or "").strip(),
        "transaction_type": (form.get("transaction_type") or "").strip(),
        "date": (form.get("date") or "").strip(),
        "category": (form.get("category") or "other").strip(),
        "payment_method": (form.get("payment_method") or "other").strip(),
        "is_recurring": _is_checked(form.get("is_recurring")),
        "is_essential": _is_checked(form.get("is_essential")),
    }

    if with_installments and len(values["name"]) < 2:
        errors.append("Name must be at least 2 characters.")
    elif not values["name"]:
        errors.append("Name is required.")

    try:
        values["amount"] = round(float((form.get("amount") or "").strip()), 2)
    except ValueError:
        errors.append("Amount must be a valid number.")
    else:
        if values["amount"] < 0.01:
            errors.append("Amount must be greater than 0.")

    if values["transaction_type"] not in TRANSACTION_TYPES:
        errors.append("Please select if this is income or expense.")

    try:
        datetime.strptime(values["date"], "%Y-%m-%d")
    except ValueError:
        errors.append("Date must be in YYYY-MM-DD format.")

    if values["category"] not in BILL_CATEGORIES:
        errors.append("Invalid category.")
    if values["payment_method"] not in PAYMENT_METHODS:
        errors.append("Invalid payment method.")

    if with_installments:
        try:
            values["installments"] = int((form.get("installments") or "1").strip())
        except ValueError:
            values["installments"] = 0
        if not 1 <= values["installments"] <= max_installments:
            errors.append(f"Installments must be between 1 and {max_installments}.")

    return values, errors


def build_installment_bills(values, user_id, parent_transaction_id=None):
    """Split one purchase into monthly installment rows sharing a group id."""
    installments = values.get("installments", 1)
    installment_amount = round(values["amount"] / installments, 2)
    first_date = datetime.strptime(values["date"], "%Y-%m-%d").date()
    if installments > 1:
        parent_transaction_id = parent_transaction_id or str(uuid.uuid4())
    else:
        parent_transaction_id = None

    bills = []
    for number in range(1, installments + 1):
        due_date = first_date + relativedelta(months=number - 1)
        bills.append(
            {
                "user_id": user_id,
                "name": f"{values['name']} ({number}/{installments})" if installments > 1 else values["name"],
                "description": values.get("description", ""),
                "amount": installment_amount,
                "transaction_type": values["transaction_type"],
                "date": due_date.isoformat(),
                "category": values["category"],
                "payment_method": values["payment_method"],
                "installment_number": number,
                "total_installments": installments,
                "parent_transaction_id": parent_transaction_id,
                "is_recurring": values.get("is_recurring", False),
                "is_essential": values.get("is_essential", False),
            }
        )
    return bills


class BillStore:
    """Bill queries for one database connection; every query is scoped to an owner."""

    def __init__(self, db, soft_delete=True):
        self.db = db
        self.soft_delete = soft_delete

    def _insert(self, bill):
        stamp = utc_now_text()
        params = [bill.get(field) for field in BILL_FIELDS]
        params[BILL_FIELDS.index("is_recurring")] = 1 if bill.get("is_recurring") else 0
        params[BILL_FIELDS.index("is_essential")] = 1 if bill.get("is_essential") else 0
        self.db.execute(
            f"""
            INSERT INTO bills ({', '.join(BILL_FIELDS)}, status, created_at, updated_at)
            VALUES ({', '.join(['?'] * len(BILL_FIELDS))}, 'active', ?, ?)
            """,
            (*params, stamp, stamp),
        )
        return self.db.last_insert_id()

    def insert_bill(self, bill):
        try:
            bill_id = self._insert(bill)
            self.db.commit()
        except DATABASE_ERRORS as exc:
            self.db.rollback()
            raise BillStoreError(str(exc)) from exc
        return bill_id

    def create_bills(self, bills):
        """Insert all rows of one submission, or none of them."""
        try:
            ids = [self._insert(bill) for bill in bills]
            self.db.commit()
        except DATABASE_ERRORS as exc:
            self.db.rollback()
            raise BillStoreError(str(exc)) from exc
        return ids

    def fetch_dedup_rows(self, user_id):
        try:
            return self.db.execute(
                "SELECT name, amount, date, description FROM bills WHERE user_id = ? AND status != 'deleted'",
                (user_id,),
            ).fetchall()
        except DATABASE_ERRORS as exc:
            raise BillStoreError(str(exc)) from exc

    def list_for_month(self, user_id, month, search=""):
        query = """
            SELECT * FROM bills
            WHERE user_id = ? AND status != 'deleted' AND date LIKE ?
        """
        params = [user_id, f"{month}%"]
        term = (search or "").strip().lower()
        if term:
            query += " AND (LOWER(name) LIKE ? OR LOWER(COALESCE(description, '')) LIKE ?)"
            params.extend([f"%{term}%", f"%{term}%"])
        query += " ORDER BY created_at DESC, id DESC"
        return self.db.execute(query, tuple(params)).fetchall()

    def get(self, user_id, bill_id):
        return self.db.execute(
            "SELECT * FROM bills WHERE id = ? AND user_id = ? AND status != 'deleted'",
            (bill_id, user_id),
        ).fetchone()

    def installments_for(self, bill):
        if bill["total_installments"] <= 1:
            return []
        group_id = bill["parent_transaction_id"] or str(bill["id"])
        return self.db.execute(
            """
            SELECT * FROM bills
            WHERE user_id = ? AND parent_transaction_id = ? AND status != 'deleted'
            ORDER BY installment_number ASC
            """,
            (bill["user_id"], group_id),
        ).fetchall()

    def update(self, user_id, bill_id, values, expected_updated_at):
        """Replace the editable fields; returns False when the row changed since ``expected_updated_at``."""
        result = self.db.execute(
            """
            UPDATE bills
            SET name = ?, description = ?, amount = ?, transaction_type = ?, date = ?, category = ?,
                payment_method = ?, is_recurring = ?, is_essential = ?, updated_at = ?
            WHERE id = ? AND user_id = ? AND status != 'deleted' AND COALESCE(updated_at, '') = ?
            """,
            (
                values["name"],
                values["description"] or None,
                values["amount"],
                values["transaction_type"],
                values["date"],
                values["category"],
                values["payment_method"],
                1 if values["is_recurring"] else 0,
                1 if values["is_essential"] else 0,
                utc_now_text(),
                bill_id,
                user_id,
                expected_updated_at,
            ),
        )
        if result.rowcount == 0:
            self.db.rollback()
            return False
        self.db.commit()
        return True

    def delete(self, user_id, bill_id):
        if self.soft_delete:
            result = self.db.execute(
                """
                UPDATE bills SET status = 'deleted', deleted_at = ?
                WHERE id = ? AND user_id = ? AND status != 'deleted'
                """,
                (utc_now_text(), bill_id, user_id),
            )
        else:
            result = self.db.execute("DELETE FROM bills WHERE id = ? AND user_id = ?", (bill_id, user_id))
        self.db.commit()
        return result.rowcount > 0
