from pathlib import Path
import io
import json
from datetime import datetime, timedelta, timezone

import pytest

from bill_tracker import create_app, cleanup_expired_import_staging, parse_row_overrides


STATEMENT = (
    "Data,Valor,Identificador,Descrição\n"
    "15/03/2024,-42.50,abc-1,Compra no débito - Padaria Pão Quente\n"
    "16/03/2024,1500.00,abc-2,Transferência recebida pelo Pix\n"
    "31/02/2024,-10.00,abc-3,Uber\n"
)


@pytest.fixture()
def app(tmp_path: Path):
    db_path = tmp_path / "test.sqlite"
    app = create_app({"TESTING": True, "SECRET_KEY": "test", "DATABASE": str(db_path), "DATABASE_URL": ""})

    with app.app_context():
        app.init_db()

    yield app


@pytest.fixture()
def client(app):
    return app.test_client()


def register(client, username="user1", password="password"):
    return client.post("/register", data={"username": username, "password": password}, follow_redirects=True)


def login(client, username="user1", password="password"):
    return client.post("/login", data={"username": username, "password": password}, follow_redirects=True)


def add_bill(client, **overrides):
    form = {
        "name": "Electricity",
        "amount": "120.00",
        "transaction_type": "expense",
        "date": "2024-03-10",
        "category": "utilities",
        "payment_method": "boleto",
        "installments": "1",
    }
    form.update(overrides)
    return client.post("/bills/new", data=form, follow_redirects=True)


def fetch_bills(client, username="user1"):
    with client.application.app_context():
        db = client.application.get_db()
        return db.execute(
            """
            SELECT bills.* FROM bills JOIN users ON users.id = bills.user_id
            WHERE users.username = ? ORDER BY bills.id
            """,
            (username,),
        ).fetchall()


def upload_statement(client, content=STATEMENT, filename="statement.csv"):
    data = {"csv_file": (io.BytesIO(content.encode("utf-8")), filename)}
    return client.post("/bills/import", data=data, content_type="multipart/form-data", follow_redirects=True)


def latest_import_id(client):
    with client.application.app_context():
        db = client.application.get_db()
        row = db.execute("SELECT import_id FROM import_staging ORDER BY id DESC LIMIT 1").fetchone()
    return row["import_id"]


def test_register_login_logout(client):
    response = register(client)
    assert b"Registration successful" in response.data

    with client.application.app_context():
        db = client.application.get_db()
        user = db.execute("SELECT password_hash FROM users WHERE username = ?", ("user1",)).fetchone()
    assert user is not None
    assert user["password_hash"] != "password"

    response = login(client)
    assert b"Bills" in response.data

    response = client.get("/logout", follow_redirects=True)
    assert b"Log In" in response.data


def test_duplicate_registration_and_bad_login(client):
    register(client)
    response = register(client)
    assert b"User already exists." in response.data

    response = login(client, password="wrong")
    assert b"Incorrect username or password." in response.data


def test_bills_require_login(client):
    response = client.get("/bills")
    assert response.status_code == 302
    assert "/login" in response.headers["Location"]


def test_add_single_bill(client):
    register(client)
    login(client)

    response = add_bill(client)
    assert b"Bill added." in response.data
    assert b"Electricity" in response.data

    rows = fetch_bills(client)
    assert len(rows) == 1
    assert rows[0]["amount"] == 120.0
    assert rows[0]["status"] == "active"
    assert rows[0]["parent_transaction_id"] is None
    assert rows[0]["total_installments"] == 1


def test_add_bill_validation_errors(client):
    register(client)
    login(client)

    response = add_bill(client, name="A", amount="0", transaction_type="")
    assert b"Name must be at least 2 characters." in response.data
    assert b"Amount must be greater than 0." in response.data
    assert b"Please select if this is income or expense." in response.data
    assert fetch_bills(client) == []


def test_add_installments_clamps_month_end(client):
    register(client)
    login(client)

    response = add_bill(client, name="Laptop", amount="1000", date="2024-01-31", installments="3", category="shopping")
    assert b"3 installments created." in response.data

    rows = fetch_bills(client)
    assert [row["name"] for row in rows] == ["Laptop (1/3)", "Laptop (2/3)", "Laptop (3/3)"]
    assert [row["date"] for row in rows] == ["2024-01-31", "2024-02-29", "2024-03-31"]
    assert {row["amount"] for row in rows} == {333.33}
    assert len({row["parent_transaction_id"] for row in rows}) == 1
    assert rows[0]["parent_transaction_id"]
    assert [row["installment_number"] for row in rows] == [1, 2, 3]


def test_installments_out_of_range_rejected(client):
    register(client)
    login(client)

    response = add_bill(client, installments="49")
    assert b"Installments must be between 1 and 48." in response.data
    assert fetch_bills(client) == []


def test_bill_detail_lists_related_installments(client):
    register(client)
    login(client)
    add_bill(client, name="Sofa", amount="300", date="2024-03-05", installments="3")

    first = fetch_bills(client)[0]
    response = client.get(f"/bills/{first['id']}")
    assert b"Related installments" in response.data
    assert b"2024-05-05" in response.data


def test_month_filter_and_search(client):
    register(client)
    login(client)
    add_bill(client, name="Rent March", date="2024-03-01", category="rent")
    add_bill(client, name="Rent April", date="2024-04-01", category="rent")
    add_bill(client, name="Gym", date="2024-03-15", description="monthly membership", category="health")

    response = client.get("/bills?month=2024-03")
    assert b"Rent March" in response.data
    assert b"Gym" in response.data
    assert b"Rent April" not in response.data
    assert b"2024-02" in response.data
    assert b"2024-04" in response.data

    response = client.get("/bills?month=2024-03&q=MEMBERSHIP")
    assert b"Gym" in response.data
    assert b"Rent March" not in response.data


def test_month_totals(client):
    register(client)
    login(client)
    add_bill(client, name="Salary", amount="2000", transaction_type="income", category="salary", date="2024-03-05")
    add_bill(client, name="Groceries", amount="250.50", date="2024-03-06", category="market")

    response = client.get("/bills?month=2024-03")
    assert b"2000.00" in response.data
    assert b"250.50" in response.data
    assert b"1749.50" in response.data


def test_edit_bill_and_stale_edit(client):
    register(client)
    login(client)
    add_bill(client)
    bill = fetch_bills(client)[0]

    form = {
        "name": "Power bill",
        "amount": "130.00",
        "transaction_type": "expense",
        "date": "2024-03-12",
        "category": "utilities",
        "payment_method": "pix",
        "updated_at": bill["updated_at"],
    }
    response = client.post(f"/bills/{bill['id']}/edit", data=form, follow_redirects=True)
    assert b"Bill updated." in response.data
    updated = fetch_bills(client)[0]
    assert updated["name"] == "Power bill"
    assert updated["amount"] == 130.0
    assert updated["payment_method"] == "pix"
    assert updated["updated_at"] != bill["updated_at"]

    form["name"] = "Stale write"
    response = client.post(f"/bills/{bill['id']}/edit", data=form, follow_redirects=True)
    assert b"This bill was edited in another session. Please reload." in response.data
    assert fetch_bills(client)[0]["name"] == "Power bill"


def test_soft_delete_hides_bill(client):
    register(client)
    login(client)
    add_bill(client)
    bill = fetch_bills(client)[0]

    response = client.post(f"/bills/{bill['id']}/delete", follow_redirects=True)
    assert b"Bill deleted." in response.data
    assert b"No bills for this month." in response.data

    row = fetch_bills(client)[0]
    assert row["status"] == "deleted"
    assert row["deleted_at"]

    response = client.get(f"/bills/{bill['id']}", follow_redirects=True)
    assert b"Bill not found." in response.data


def test_hard_delete_when_soft_delete_disabled(tmp_path):
    app = create_app({"TESTING": True, "SECRET_KEY": "test", "DATABASE": str(tmp_path / "hard.sqlite"), "DATABASE_URL": "", "SOFT_DELETE_BILLS": False})
    client = app.test_client()
    register(client)
    login(client)
    add_bill(client)
    bill = fetch_bills(client)[0]

    client.post(f"/bills/{bill['id']}/delete", follow_redirects=True)
    assert fetch_bills(client) == []


def test_users_cannot_see_each_others_bills(client):
    register(client)
    login(client)
    add_bill(client, name="Private bill")
    bill = fetch_bills(client)[0]
    client.get("/logout")

    register(client, username="user2")
    login(client, username="user2")
    response = client.get("/bills?month=2024-03")
    assert b"Private bill" not in response.data

    response = client.get(f"/bills/{bill['id']}", follow_redirects=True)
    assert b"Bill not found." in response.data

    client.post(f"/bills/{bill['id']}/delete", follow_redirects=True)
    assert fetch_bills(client, "user1")[0]["status"] == "active"


def test_export_month_csv(client):
    register(client)
    login(client)
    add_bill(client, name="Water", amount="45.1", date="2024-03-20")
    add_bill(client, name="Other month", date="2024-05-01")

    response = client.get("/bills/export.csv?month=2024-03")
    assert response.mimetype == "text/csv"
    assert "bills-2024-03.csv" in response.headers["Content-Disposition"]
    body = response.data.decode("utf-8")
    assert body.splitlines()[0] == "date,name,amount,transaction_type,category,payment_method"
    assert "2024-03-20,Water,45.10,expense,utilities,boleto" in body
    assert "Other month" not in body


def test_import_preview_shows_valid_and_invalid_rows(client):
    register(client)
    login(client)

    response = upload_statement(client)
    assert b"File processed! 2 valid transactions found (1 with errors)" in response.data
    assert b"Invalid date" in response.data
    # only valid lines get a checkbox
    assert response.data.count(b'name="selected_rows"') == 2


def test_import_rejects_bad_file(client):
    register(client)
    login(client)

    response = upload_statement(client, "Foo,Bar\n1,2\n")
    assert b"Could not identify required columns" in response.data

    response = upload_statement(client, "Data,Valor,Descricao\n")
    assert b"CSV file must have at least 2 lines (header + data)" in response.data

    response = client.post("/bills/import", data={}, follow_redirects=True)
    assert b"Please choose a CSV file." in response.data


def test_import_confirm_selected_rows_with_override(client):
    register(client)
    login(client)
    upload_statement(client)
    import_id = latest_import_id(client)

    response = client.post(
        f"/bills/import/{import_id}/confirm",
        data={"action": "import_selected", "selected_rows": ["2"], "category_2": "food", "payment_method_2": "cash"},
        follow_redirects=True,
    )
    assert b"1 transactions imported successfully!" in response.data
    assert b"Import summary" in response.data

    rows = fetch_bills(client)
    assert len(rows) == 1
    assert rows[0]["name"] == "Compra no débito - Padaria Pão Quente"
    assert rows[0]["description"] == "Imported from Nubank - ID:abc-1 - Compra no débito - Padaria Pão Quente"
    assert rows[0]["category"] == "food"
    assert rows[0]["payment_method"] == "cash"
    assert rows[0]["transaction_type"] == "expense"
    assert rows[0]["amount"] == 42.5
    assert rows[0]["date"] == "2024-03-15"

    with client.application.app_context():
        db = client.application.get_db()
        staged = db.execute("SELECT COUNT(*) FROM import_staging WHERE import_id = ?", (import_id,)).fetchone()[0]
    assert staged == 0


def test_import_all_skips_duplicates_on_second_run(client):
    register(client)
    login(client)
    upload_statement(client)
    import_id = latest_import_id(client)
    response = client.post(f"/bills/import/{import_id}/confirm", data={"action": "import_all"}, follow_redirects=True)
    assert b"2 transactions imported successfully!" in response.data

    upload_statement(client)
    import_id = latest_import_id(client)
    response = client.post(f"/bills/import/{import_id}/confirm", data={"action": "import_all"}, follow_redirects=True)
    assert b"2 duplicate transactions ignored." in response.data
    assert b"imported successfully" not in response.data
    assert len(fetch_bills(client)) == 2


def test_import_invalid_row_cannot_be_selected(client):
    register(client)
    login(client)
    upload_statement(client)
    import_id = latest_import_id(client)

    response = client.post(
        f"/bills/import/{import_id}/confirm",
        data={"action": "import_selected", "selected_rows": ["4"]},
        follow_redirects=True,
    )
    assert b"Select at least one transaction to import." in response.data
    assert fetch_bills(client) == []


def test_import_error_report_without_failures(client):
    register(client)
    login(client)
    upload_statement(client)
    import_id = latest_import_id(client)
    client.post(f"/bills/import/{import_id}/confirm", data={"action": "import_all"})

    response = client.get(f"/bills/import/{import_id}/errors.csv", follow_redirects=True)
    assert b"No failed transactions to export." in response.data


def test_import_error_report_lists_failed_rows(client):
    register(client)
    login(client)
    result = {
        "success": 0,
        "errors": 1,
        "duplicates": 0,
        "total": 1,
        "details": {
            "imported": [],
            "failed": [
                {
                    "original_row": 3,
                    "date": "2024-03-15",
                    "description": "Padaria",
                    "amount": 12.0,
                    "errors": ["disk full"],
                }
            ],
            "duplicates": [],
        },
    }
    with client.application.app_context():
        db = client.application.get_db()
        user_id = db.execute("SELECT id FROM users WHERE username = 'user1'").fetchone()["id"]
        db.execute(
            "INSERT INTO import_results (import_id, user_id, created_at, result_json) VALUES (?, ?, ?, ?)",
            ("failed-import", user_id, datetime.now(timezone.utc).isoformat(), json.dumps(result)),
        )
        db.commit()

    response = client.get("/bills/import/failed-import/summary")
    assert b"Download error report" in response.data

    response = client.get("/bills/import/failed-import/errors.csv")
    assert "import_error_report.csv" in response.headers["Content-Disposition"]
    lines = response.data.decode("utf-8").splitlines()
    assert lines == ["row,errors,date,description,amount", "3,disk full,2024-03-15,Padaria,12.00"]


def test_import_preview_expired(client):
    register(client)
    login(client)

    response = client.get("/bills/import/missing-id", follow_redirects=True)
    assert b"Preview expired. Please re-upload the file." in response.data

    response = client.post("/bills/import/missing-id/confirm", data={"action": "import_all"}, follow_redirects=True)
    assert b"Preview expired. Please re-upload the file." in response.data


def test_import_preview_belongs_to_uploader(client):
    register(client)
    login(client)
    upload_statement(client)
    import_id = latest_import_id(client)
    client.get("/logout")

    register(client, username="user2")
    login(client, username="user2")
    response = client.get(f"/bills/import/{import_id}", follow_redirects=True)
    assert b"Preview expired. Please re-upload the file." in response.data


def test_cleanup_expired_import_staging(app):
    old = (datetime.now(timezone.utc) - timedelta(hours=30)).isoformat()
    fresh = datetime.now(timezone.utc).isoformat()
    with app.app_context():
        db = app.get_db()
        for import_id, created_at in (("old", old), ("fresh", fresh)):
            db.execute(
                "INSERT INTO import_staging (import_id, user_id, created_at, row_json) VALUES (?, 1, ?, '{}')",
                (import_id, created_at),
            )
        cleanup_expired_import_staging(db, 24)
        db.commit()
        remaining = [row["import_id"] for row in db.execute("SELECT import_id FROM import_staging").fetchall()]
    assert remaining == ["fresh"]


def test_parse_row_overrides():
    overrides = parse_row_overrides({"category_3": "food", "payment_method_3": "pix", "category_x": "bad", "action": "import_all"})
    assert overrides == {3: {"category": "food", "payment_method": "pix"}}


def test_db_health_endpoint(client):
    response = client.get("/health/db")
    assert response.status_code == 200
    payload = response.get_json()
    assert payload["ok"] is True
    assert payload["schema_version"] == 3
