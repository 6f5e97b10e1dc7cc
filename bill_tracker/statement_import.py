"""Bank statement import: parse a CSV export, classify and validate each line,
then write the rows the user selected as bills, skipping ones already stored."""

import csv
import io
import logging
import re
import unicodedata
from datetime import datetime

from .bills import BILL_CATEGORIES, PAYMENT_METHODS, BillStoreError


logger = logging.getLogger(__name__)


class StatementImportError(ValueError):
    """Raised when a statement file cannot be parsed at all."""


class ImportAbortedError(RuntimeError):
    """Raised when a commit cannot start; nothing has been written."""


DEFAULT_SOURCE_LABEL = "Nubank"

HEADER_ALIASES = {
    "date": ["data", "date"],
    "amount": ["valor", "amount", "quantia"],
    "identifier": ["identificador", "identifier", "id"],
    "description": ["descrição", "description", "descricao", "histórico", "historico"],
}

DATE_PATTERNS = [
    # (pattern, group index of year, month, day)
    (re.compile(r"^(\d{2})/(\d{2})/(\d{4})$"), (3, 2, 1)),
    (re.compile(r"^(\d{4})-(\d{2})-(\d{2})$"), (1, 2, 3)),
    (re.compile(r"^(\d{2})-(\d{2})-(\d{4})$"), (3, 2, 1)),
]
DATE_FORMAT_ERROR = "Invalid date format. Use dd/mm/yyyy, dd-mm-yyyy or yyyy-mm-dd"
COMMA_DECIMAL_PATTERN = re.compile(r",\d{1,2}$")

CATEGORY_RULES = [
    # investments
    ("other", ["resgate rdb", "aplicacao rdb", "investimento", "renda fixa"]),
    # transfers
    ("other", ["transferencia", "pix", "ted", "doc", "credito em conta"]),
    # bill and tax payments
    ("other", ["pagamento de fatura", "pagamento de boleto", "celesc", "receita federal", "municipio", "prefeitura"]),
    ("study", ["escola", "educacao", "estacio", "universidade", "curso"]),
    ("market", ["compra no debito", "supermercado", "mercado", "bistek", "padaria", "acougue"]),
    ("transport", ["uber", "taxi", "onibus", "metro", "combustivel", "posto"]),
    ("health", ["farmacia", "hospital", "medico", "clinica", "plano de saude"]),
    ("food", ["restaurante", "lanchonete", "delivery", "ifood", "uber eats"]),
    ("entertainment", ["cinema", "teatro", "show", "netflix", "spotify", "streaming"]),
    ("office", ["papelaria", "escritorio", "material", "office"]),
]
PAYMENT_METHOD_RULES = [
    ("pix", ["pix"]),
    ("debit_card", ["compra no debito"]),
    ("credit_card", ["compra no credito", "pagamento de fatura"]),
    ("boleto", ["pagamento de boleto"]),
    ("transfer", ["transferencia", "ted", "doc", "credito em conta"]),
    ("transfer", ["resgate", "aplicacao", "rdb"]),
]

# Matches the exact token build_imported_bill writes: "ID:<identifier> - <description>".
IDENTIFIER_MARKER = re.compile(r"ID:(.+?) - ")
ERROR_REPORT_HEADER = ["row", "errors", "date", "description", "amount"]


def normalize_description(value):
    normalized = unicodedata.normalize("NFKD", (value or "").strip().lower())
    no_accents = "".join(ch for ch in normalized if not unicodedata.combining(ch))
    return re.sub(r"\s+", " ", no_accents)


def decode_statement_bytes(file_bytes):
    for encoding in ["utf-8-sig", "utf-8", "cp1252", "latin-1"]:
        try:
            return file_bytes.decode(encoding)
        except UnicodeDecodeError:
            continue
    return None


def _first_match(rules, description):
    text = normalize_description(description)
    for tag, keywords in rules:
        if any(keyword in text for keyword in keywords):
            return tag
    return "other"


def classify_category(description):
    return _first_match(CATEGORY_RULES, description)


def classify_payment_method(description):
    return _first_match(PAYMENT_METHOD_RULES, description)


def normalize_date(value):
    """Return ``(iso_date, error)``; ``iso_date`` is empty whenever ``error`` is set."""
    cleaned = (value or "").strip()
    if not cleaned:
        return "", "Date is required"

    for pattern, (year_group, month_group, day_group) in DATE_PATTERNS:
        match = pattern.match(cleaned)
        if match is None:
            continue
        iso_date = f"{match.group(year_group)}-{match.group(month_group)}-{match.group(day_group)}"
        try:
            datetime.strptime(iso_date, "%Y-%m-%d")
        except ValueError:
            return "", "Invalid date"
        return iso_date, None

    return "", DATE_FORMAT_ERROR


def normalize_amount(value):
    """Return ``(magnitude, transaction_type, error)`` for a signed amount string.

    Both ``1234.56`` and the Brazilian ``1.234,56`` are understood; a trailing
    comma with one or two digits marks the comma as the decimal separator.
    """
    cleaned = (value or "").strip()
    if not cleaned:
        return 0.0, "income", "Amount is required"

    if COMMA_DECIMAL_PATTERN.search(cleaned):
        cleaned = cleaned.replace(".", "").replace(",", ".", 1)
    cleaned = re.sub(r"[^\d.-]", "", cleaned)

    try:
        parsed = float(cleaned)
    except ValueError:
        return 0.0, "income", "Amount must be a valid number"

    transaction_type = "expense" if parsed < 0 else "income"
    return round(abs(parsed), 2), transaction_type, None


def validate_fields(raw_date, description, raw_amount):
    """Normalize the three required fields, collecting every error found."""
    errors = []

    date_value, date_error = normalize_date(raw_date)
    if date_error:
        errors.append(date_error)

    if not description:
        errors.append("Description is required")

    amount, transaction_type, amount_error = normalize_amount(raw_amount)
    if amount_error:
        errors.append(amount_error)

    values = {"date": date_value, "amount": amount, "transaction_type": transaction_type}
    return values, errors


def refresh_validity(candidate):
    candidate["is_valid"] = not candidate["errors"]
    return candidate


def build_candidate(original_row, raw_date, raw_amount, identifier, description):
    values, errors = validate_fields(raw_date, description, raw_amount)
    candidate = {
        "original_row": original_row,
        "date": values["date"],
        "description": description or "",
        "amount": values["amount"],
        "transaction_type": values["transaction_type"],
        "identifier": identifier or "",
        "category": classify_category(description),
        "payment_method": classify_payment_method(description),
        "errors": errors,
    }
    return refresh_validity(candidate)


def invalid_candidate(original_row, message):
    return {
        "original_row": original_row,
        "date": "",
        "description": "",
        "amount": 0.0,
        "transaction_type": "expense",
        "identifier": "",
        "category": "other",
        "payment_method": "other",
        "errors": [message],
        "is_valid": False,
    }


def detect_separator(header_line):
    return ";" if ";" in header_line else ","


def map_header_columns(headers):
    folded_headers = [normalize_description(header) for header in headers]
    mapping = {}
    for field, aliases in HEADER_ALIASES.items():
        folded_aliases = [normalize_description(alias) for alias in aliases]
        mapping[field] = next(
            (idx for idx, header in enumerate(folded_headers) if any(alias in header for alias in folded_aliases)),
            None,
        )
    return mapping


def _clean_cell(value):
    return (value or "").replace('"', "").strip()


def split_line(line, separator):
    """Split one physical line; a stray quote never reaches past its own line."""
    return [_clean_cell(cell) for cell in next(csv.reader([line], delimiter=separator), [])]


def parse_statement(content):
    """Turn statement text into candidate transactions, one per non-blank data line.

    Raises StatementImportError for problems with the file as a whole; problems
    with a single line are recorded on that line's candidate instead.
    """
    content = (content or "").lstrip("\ufeff")
    lines = content.splitlines()
    non_blank_lines = [line for line in lines if line.strip()]
    if len(non_blank_lines) < 2:
        raise StatementImportError("CSV file must have at least 2 lines (header + data)")

    separator = detect_separator(non_blank_lines[0])

    mapping = None
    required_width = 0
    candidates = []
    for line_number, line in enumerate(lines, start=1):
        if not line.strip():
            continue
        try:
            values = split_line(line, separator)
        except csv.Error as exc:
            if mapping is None:
                raise StatementImportError(f"Could not read header line: {exc}") from exc
            candidates.append(invalid_candidate(line_number, f"Line {line_number}: {exc}"))
            continue
        if not any(values):
            continue

        if mapping is None:
            headers = [value.lstrip("\ufeff") for value in values]
            mapping = map_header_columns(headers)
            if any(mapping[field] is None for field in ("date", "description", "amount")):
                raise StatementImportError(
                    "Could not identify required columns. "
                    f"Found: {', '.join(headers)}. "
                    "Required: Date, Description, Amount"
                )
            required_width = max(idx for idx in mapping.values() if idx is not None) + 1
            continue

        if len(values) < required_width:
            candidates.append(invalid_candidate(line_number, f"Line {line_number}: Insufficient number of columns"))
            continue

        identifier_idx = mapping["identifier"]
        candidates.append(
            build_candidate(
                line_number,
                values[mapping["date"]],
                values[mapping["amount"]],
                values[identifier_idx] if identifier_idx is not None else "",
                values[mapping["description"]],
            )
        )

    if not candidates:
        raise StatementImportError("No transactions found in file")
    return candidates


def summarize_candidates(candidates):
    valid = [candidate for candidate in candidates if candidate["is_valid"]]
    income = sum(c["amount"] for c in valid if c["transaction_type"] == "income")
    expense = sum(c["amount"] for c in valid if c["transaction_type"] == "expense")
    return {
        "total": len(candidates),
        "valid": len(valid),
        "invalid": len(candidates) - len(valid),
        "income": round(income, 2),
        "expense": round(expense, 2),
        "categories": len({c["category"] for c in valid}),
    }


def select_candidates(candidates, selected_rows, overrides=None):
    """Keep the valid candidates whose row is in ``selected_rows``, applying per-row tag overrides."""
    selected_rows = set(selected_rows)
    overrides = overrides or {}
    selected = []
    for candidate in candidates:
        if candidate["original_row"] not in selected_rows or not candidate["is_valid"]:
            continue
        chosen = dict(candidate, errors=list(candidate["errors"]))
        row_overrides = overrides.get(candidate["original_row"], {})
        if row_overrides.get("category") in BILL_CATEGORIES:
            chosen["category"] = row_overrides["category"]
        if row_overrides.get("payment_method") in PAYMENT_METHODS:
            chosen["payment_method"] = row_overrides["payment_method"]
        selected.append(chosen)
    return selected


def _key_amount(amount):
    return f"{float(amount or 0):.2f}"


def existing_bill_key(bill):
    match = IDENTIFIER_MARKER.search(bill["description"] or "")
    if match:
        return match.group(1)
    return f"{bill['name']}-{_key_amount(bill['amount'])}-{bill['date']}"


def candidate_key(candidate):
    identifier = (candidate.get("identifier") or "").strip()
    if identifier:
        return identifier
    return f"{candidate['description']}-{_key_amount(candidate['amount'])}-{candidate['date']}"


def build_imported_bill(candidate, user_id, source_label=DEFAULT_SOURCE_LABEL):
    description = candidate["description"]
    if candidate.get("identifier"):
        stored_description = f"Imported from {source_label} - ID:{candidate['identifier']} - {description}"
    else:
        stored_description = f"Imported from {source_label} - {description}"
    return {
        "user_id": user_id,
        "name": description,
        "description": stored_description,
        "amount": candidate["amount"],
        "transaction_type": candidate["transaction_type"],
        "date": candidate["date"],
        "category": candidate.get("category") or "other",
        "payment_method": candidate.get("payment_method") or "other",
        "installment_number": 1,
        "total_installments": 1,
        "parent_transaction_id": None,
        "is_recurring": False,
        "is_essential": False,
    }


def new_import_result(total):
    return {
        "success": 0,
        "errors": 0,
        "duplicates": 0,
        "total": total,
        "details": {"imported": [], "failed": [], "duplicates": []},
    }


def commit_transactions(candidates, user_id, store, source_label=DEFAULT_SOURCE_LABEL):
    """Insert each selected candidate unless it is already stored.

    Existing bills are read once, before any write. Inserts run one at a time
    in input order; a failed insert is recorded and the next candidate is
    still processed. Every candidate lands in exactly one result bucket.
    """
    if not user_id:
        raise ImportAbortedError("Authentication error. Please login again.")

    try:
        existing_rows = store.fetch_dedup_rows(user_id)
    except BillStoreError as exc:
        logger.error("Could not load existing bills for user_id=%s: %s", user_id, exc)
        raise ImportAbortedError(f"Could not load existing bills: {exc}") from exc
    existing_keys = {existing_bill_key(row) for row in existing_rows}

    result = new_import_result(len(candidates))
    for candidate in candidates:
        if candidate_key(candidate) in existing_keys:
            result["duplicates"] += 1
            result["details"]["duplicates"].append(candidate)
            continue

        try:
            store.insert_bill(build_imported_bill(candidate, user_id, source_label))
        except BillStoreError as exc:
            logger.warning("Import insert failed for row %s: %s", candidate["original_row"], exc)
            failed = dict(candidate, errors=[*candidate["errors"], str(exc)])
            result["errors"] += 1
            result["details"]["failed"].append(refresh_validity(failed))
            continue

        result["success"] += 1
        result["details"]["imported"].append(candidate)

    return result


def build_error_report_csv(result):
    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(ERROR_REPORT_HEADER)
    for candidate in result["details"]["failed"]:
        writer.writerow(
            [
                candidate["original_row"],
                "; ".join(candidate["errors"]),
                candidate["date"],
                candidate["description"],
                f"{candidate['amount']:.2f}",
            ]
        )
    return output.getvalue()
