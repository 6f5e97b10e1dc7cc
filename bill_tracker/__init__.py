import csv
import io
import json
import os
import uuid
from datetime import datetime, timedelta, timezone
from functools import wraps

from flask import (
    Flask,
    flash,
    g,
    redirect,
    render_template,
    request,
    session,
    url_for,
    Response,
    jsonify,
)
from werkzeug.security import check_password_hash, generate_password_hash

from .bills import (
    BILL_CATEGORIES,
    DEFAULT_MAX_INSTALLMENTS,
    EXPORT_HEADER,
    PAYMENT_METHODS,
    BillStore,
    BillStoreError,
    build_installment_bills,
    resolve_month,
    shift_month,
    summarize_bills,
    validate_bill_form,
)
from .db import DATABASE_ERRORS, INTEGRITY_ERRORS, connect_db, parse_database_config
from .db_migrations import apply_migrations, get_db_health
from .statement_import import (
    DEFAULT_SOURCE_LABEL,
    ImportAbortedError,
    StatementImportError,
    build_error_report_csv,
    commit_transactions,
    decode_statement_bytes,
    parse_statement,
    select_candidates,
    summarize_candidates,
)


class DatabaseInitError(RuntimeError):
    """Raised when the database cannot be opened or migrated."""


def cleanup_expired_import_staging(db, max_age_hours=24):
    cutoff = (datetime.now(timezone.utc) - timedelta(hours=max_age_hours)).isoformat()
    db.execute("DELETE FROM import_staging WHERE created_at < ?", (cutoff,))


def stage_import_rows(db, import_id, rows, user_id):
    created_at = datetime.now(timezone.utc).isoformat()
    for row in rows:
        db.execute(
            """
            INSERT INTO import_staging (import_id, user_id, created_at, row_json, status)
            VALUES (?, ?, ?, ?, 'preview')
            """,
            (import_id, user_id, created_at, json.dumps(row)),
        )


def get_staged_rows(db, import_id, user_id):
    staged_rows = db.execute(
        """
        SELECT id, row_json FROM import_staging
        WHERE import_id = ? AND user_id = ?
        ORDER BY id ASC
        """,
        (import_id, user_id),
    ).fetchall()

    parsed_rows = []
    for row in staged_rows:
        try:
            parsed_rows.append(json.loads(row["row_json"]))
        except (TypeError, ValueError):
            continue
    return parsed_rows


def save_import_result(db, import_id, user_id, result):
    db.execute(
        "INSERT INTO import_results (import_id, user_id, created_at, result_json) VALUES (?, ?, ?, ?)",
        (import_id, user_id, datetime.now(timezone.utc).isoformat(), json.dumps(result)),
    )


def get_import_result(db, import_id, user_id):
    row = db.execute(
        "SELECT result_json FROM import_results WHERE import_id = ? AND user_id = ? ORDER BY id DESC LIMIT 1",
        (import_id, user_id),
    ).fetchone()
    if row is None:
        return None
    try:
        return json.loads(row["result_json"])
    except (TypeError, ValueError):
        return None


def parse_row_overrides(form):
    overrides = {}
    for key, value in form.items():
        field, _, raw_row = key.rpartition("_")
        if field not in {"category", "payment_method"}:
            continue
        try:
            row_number = int(raw_row)
        except ValueError:
            continue
        overrides.setdefault(row_number, {})[field] = value.strip()
    return overrides


def parse_selected_rows(values):
    rows = []
    for value in values:
        try:
            rows.append(int(value))
        except (TypeError, ValueError):
            continue
    return rows


def create_app(test_config=None):
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_mapping(
        SECRET_KEY="dev",
        DATABASE=os.path.join(app.instance_path, "bill_tracker.sqlite"),
        DATABASE_URL=os.environ.get("DATABASE_URL", ""),
        SOFT_DELETE_BILLS=True,
        IMPORT_SOURCE_LABEL=DEFAULT_SOURCE_LABEL,
        IMPORT_STAGING_MAX_AGE_HOURS=24,
        MAX_INSTALLMENTS=DEFAULT_MAX_INSTALLMENTS,
    )

    if test_config is not None:
        app.config.update(test_config)

    os.makedirs(app.instance_path, exist_ok=True)
    app.config.setdefault("DB_INIT_ERROR", None)

    def database_config():
        return parse_database_config(app.config["DATABASE"], app.config.get("DATABASE_URL"))

    @app.teardown_appcontext
    def close_db(_=None):
        db = g.pop("db", None)
        if db is not None:
            db.close()

    def get_db():
        if "db" not in g:
            try:
                g.db = connect_db(database_config())
            except (*DATABASE_ERRORS, RuntimeError) as exc:
                message = f"Unable to open database at {app.config['DATABASE']}: {exc}"
                app.logger.error(message)
                app.config["DB_INIT_ERROR"] = message
                raise DatabaseInitError(message) from exc
        return g.db

    def get_store():
        return BillStore(get_db(), soft_delete=app.config["SOFT_DELETE_BILLS"])

    def init_db():
        try:
            apply_migrations(database_config())
            app.config["DB_INIT_ERROR"] = None
        except (*DATABASE_ERRORS, OSError, RuntimeError) as exc:
            message = f"Failed to initialize database at {app.config['DATABASE']}: {exc}"
            app.logger.error(message)
            app.config["DB_INIT_ERROR"] = message
            raise DatabaseInitError(message) from exc

    @app.cli.command("init-db")
    def init_db_command():
        init_db()
        print("Initialized the database.")

    @app.route("/init-db")
    def init_db_route():
        init_db()
        return "Database initialized."

    @app.get("/health/db")
    def db_health():
        try:
            return jsonify(get_db_health(database_config()))
        except DATABASE_ERRORS as exc:
            return jsonify({
                "ok": False,
                "schema_version": 0,
                "missing_tables": [],
                "missing_columns": {},
                "missing_indexes": [],
                "error": str(exc),
            }), 500

    def login_required(view):
        @wraps(view)
        def wrapped_view(**kwargs):
            if g.user is None:
                return redirect(url_for("login"))
            return view(**kwargs)

        return wrapped_view

    def render_db_init_error_response():
        message = app.config.get("DB_INIT_ERROR") or "Database initialization failed."
        return f"<h1>Database initialization failed</h1><p>{message}</p>", 500

    @app.before_request
    def load_logged_in_user():
        if app.config.get("DB_INIT_ERROR"):
            return render_db_init_error_response()

        user_id = session.get("user_id")
        if user_id is None:
            g.user = None
        else:
            g.user = get_db().execute("SELECT id, username FROM users WHERE id = ?", (user_id,)).fetchone()

    @app.context_processor
    def inject_choices():
        return {"bill_categories": BILL_CATEGORIES, "payment_methods": PAYMENT_METHODS}

    @app.route("/")
    def index():
        if g.user:
            return redirect(url_for("bills"))
        return redirect(url_for("login"))

    @app.route("/register", methods=("GET", "POST"))
    def register():
        if request.method == "POST":
            username = request.form["username"].strip()
            password = request.form["password"]
            error = None
            if not username:
                error = "Username is required."
            elif not password:
                error = "Password is required."

            if error is None:
                db = get_db()
                try:
                    db.execute(
                        "INSERT INTO users (username, password_hash) VALUES (?, ?)",
                        (username, generate_password_hash(password)),
                    )
                    db.commit()
                    flash("Registration successful. Please login.")
                    return redirect(url_for("login"))
                except INTEGRITY_ERRORS:
                    db.rollback()
                    error = "User already exists."

            flash(error)
        return render_template("register.html")

    @app.route("/login", methods=("GET", "POST"))
    def login():
        if request.method == "POST":
            username = request.form["username"].strip()
            password = request.form["password"]
            user = get_db().execute("SELECT * FROM users WHERE username = ?", (username,)).fetchone()

            if user is None or not check_password_hash(user["password_hash"], password):
                flash("Incorrect username or password.")
            else:
                session.clear()
                session["user_id"] = user["id"]
                return redirect(url_for("bills"))

        return render_template("login.html")

    @app.route("/logout")
    def logout():
        session.clear()
        return redirect(url_for("login"))

    @app.route("/bills")
    @login_required
    def bills():
        month = resolve_month(request.args.get("month"))
        search = (request.args.get("q") or "").strip()
        rows = get_store().list_for_month(g.user["id"], month, search)
        return render_template(
            "bills.html",
            bills=rows,
            month=month,
            previous_month=shift_month(month, -1),
            next_month=shift_month(month, 1),
            search=search,
            totals=summarize_bills(rows),
        )

    @app.route("/bills/new", methods=("GET", "POST"))
    @login_required
    def create_bill():
        max_installments = app.config["MAX_INSTALLMENTS"]
        if request.method == "POST":
            values, errors = validate_bill_form(request.form, max_installments=max_installments)
            if errors:
                for error in errors:
                    flash(error)
                return render_template("bill_form.html", bill=request.form, editing=False, max_installments=max_installments)

            rows = build_installment_bills(values, g.user["id"])
            try:
                get_store().create_bills(rows)
            except BillStoreError as exc:
                app.logger.error("Bill insert failed for user_id=%s: %s", g.user["id"], exc)
                flash("Error saving bill. Please try again.")
                return render_template("bill_form.html", bill=request.form, editing=False, max_installments=max_installments)

            app.logger.info("Created %s bill row(s) for user_id=%s", len(rows), g.user["id"])
            if len(rows) > 1:
                flash(f"{len(rows)} installments created.")
            else:
                flash("Bill added.")
            return redirect(url_for("bills", month=values["date"][:7]))

        return render_template(
            "bill_form.html",
            bill={"date": datetime.now().date().isoformat(), "installments": 1},
            editing=False,
            max_installments=max_installments,
        )

    @app.get("/bills/<int:bill_id>")
    @login_required
    def bill_detail(bill_id):
        store = get_store()
        bill = store.get(g.user["id"], bill_id)
        if bill is None:
            flash("Bill not found.")
            return redirect(url_for("bills"))
        return render_template("bill_detail.html", bill=bill, installments=store.installments_for(bill))

    @app.route("/bills/<int:bill_id>/edit", methods=("GET", "POST"))
    @login_required
    def edit_bill(bill_id):
        store = get_store()
        bill = store.get(g.user["id"], bill_id)
        if bill is None:
            flash("Bill not found.")
            return redirect(url_for("bills"))

        if request.method == "POST":
            values, errors = validate_bill_form(request.form, with_installments=False)
            if errors:
                for error in errors:
                    flash(error)
                return render_template("bill_form.html", bill=request.form, editing=True, bill_id=bill_id)

            expected_updated_at = (request.form.get("updated_at") or "").strip() or (bill["updated_at"] or "")
            if not store.update(g.user["id"], bill_id, values, expected_updated_at):
                flash("This bill was edited in another session. Please reload.")
                return redirect(url_for("edit_bill", bill_id=bill_id))

            app.logger.info("Updated bill_id=%s for user_id=%s", bill_id, g.user["id"])
            flash("Bill updated.")
            return redirect(url_for("bills", month=values["date"][:7]))

        return render_template("bill_form.html", bill=bill, editing=True, bill_id=bill_id)

    @app.post("/bills/<int:bill_id>/delete")
    @login_required
    def delete_bill(bill_id):
        store = get_store()
        bill = store.get(g.user["id"], bill_id)
        if bill is None or not store.delete(g.user["id"], bill_id):
            app.logger.warning("Delete failed for bill_id=%s user_id=%s", bill_id, g.user["id"])
            flash("Bill not found.")
            return redirect(url_for("bills"))

        app.logger.info("Deleted bill_id=%s for user_id=%s (soft=%s)", bill_id, g.user["id"], store.soft_delete)
        flash("Bill deleted.")
        return redirect(url_for("bills", month=bill["date"][:7]))

    @app.get("/bills/export.csv")
    @login_required
    def export_bills():
        month = resolve_month(request.args.get("month"))
        rows = get_store().list_for_month(g.user["id"], month)

        output = io.StringIO()
        writer = csv.writer(output)
        writer.writerow(EXPORT_HEADER)
        for row in sorted(rows, key=lambda item: (item["date"], item["id"])):
            writer.writerow([row["date"], row["name"], f"{row['amount']:.2f}", row["transaction_type"], row["category"], row["payment_method"]])

        return Response(
            output.getvalue(),
            mimetype="text/csv",
            headers={"Content-Disposition": f"attachment; filename=bills-{month}.csv"},
        )

    @app.route("/bills/import", methods=("GET", "POST"))
    @login_required
    def import_statement():
        if request.method == "GET":
            return render_template("import_upload.html")

        file = request.files.get("csv_file")
        if file is None or not file.filename:
            flash("Please choose a CSV file.")
            return render_template("import_upload.html")

        content = decode_statement_bytes(file.read())
        if content is None:
            flash("Could not read file encoding. Please re-save as CSV UTF-8.")
            return render_template("import_upload.html")

        try:
            candidates = parse_statement(content)
        except StatementImportError as exc:
            flash(f"Error processing file: {exc}")
            return render_template("import_upload.html")

        db = get_db()
        cleanup_expired_import_staging(db, app.config["IMPORT_STAGING_MAX_AGE_HOURS"])
        import_id = str(uuid.uuid4())
        stage_import_rows(db, import_id, candidates, g.user["id"])
        db.commit()

        summary = summarize_candidates(candidates)
        message = f"File processed! {summary['valid']} valid transactions found"
        if summary["invalid"]:
            message += f" ({summary['invalid']} with errors)"
        flash(message)
        return redirect(url_for("import_preview", import_id=import_id))

    @app.get("/bills/import/<import_id>")
    @login_required
    def import_preview(import_id):
        candidates = get_staged_rows(get_db(), import_id, g.user["id"])
        if not candidates:
            flash("Preview expired. Please re-upload the file.")
            return redirect(url_for("import_statement"))
        return render_template(
            "import_preview.html",
            import_id=import_id,
            candidates=candidates,
            summary=summarize_candidates(candidates),
        )

    @app.post("/bills/import/<import_id>/confirm")
    @login_required
    def confirm_import(import_id):
        db = get_db()
        candidates = get_staged_rows(db, import_id, g.user["id"])
        if not candidates:
            flash("Preview expired. Please re-upload the file.")
            return redirect(url_for("import_statement"))

        if request.form.get("action") == "import_all":
            selected_rows = [candidate["original_row"] for candidate in candidates]
        else:
            selected_rows = parse_selected_rows(request.form.getlist("selected_rows"))
        selected = select_candidates(candidates, selected_rows, parse_row_overrides(request.form))
        if not selected:
            flash("Select at least one transaction to import.")
            return redirect(url_for("import_preview", import_id=import_id))

        try:
            result = commit_transactions(
                selected,
                g.user["id"],
                BillStore(db, soft_delete=app.config["SOFT_DELETE_BILLS"]),
                source_label=app.config["IMPORT_SOURCE_LABEL"],
            )
        except ImportAbortedError as exc:
            app.logger.error("Import %s aborted for user_id=%s: %s", import_id, g.user["id"], exc)
            flash(str(exc))
            return redirect(url_for("import_preview", import_id=import_id))

        save_import_result(db, import_id, g.user["id"], result)
        db.execute("DELETE FROM import_staging WHERE import_id = ?", (import_id,))
        db.commit()
        app.logger.info(
            "Import %s for user_id=%s: total=%s success=%s duplicates=%s errors=%s",
            import_id,
            g.user["id"],
            result["total"],
            result["success"],
            result["duplicates"],
            result["errors"],
        )

        if result["success"]:
            flash(f"{result['success']} transactions imported successfully!")
        if result["duplicates"]:
            flash(f"{result['duplicates']} duplicate transactions ignored.")
        if result["errors"]:
            flash(f"{result['errors']} transactions failed to import.")
        return redirect(url_for("import_summary", import_id=import_id))

    @app.get("/bills/import/<import_id>/summary")
    @login_required
    def import_summary(import_id):
        result = get_import_result(get_db(), import_id, g.user["id"])
        if result is None:
            flash("Import result not found.")
            return redirect(url_for("import_statement"))
        success_rate = round(result["success"] / result["total"] * 100) if result["total"] else 0
        return render_template("import_summary.html", import_id=import_id, result=result, success_rate=success_rate)

    @app.get("/bills/import/<import_id>/errors.csv")
    @login_required
    def import_error_report(import_id):
        result = get_import_result(get_db(), import_id, g.user["id"])
        if result is None:
            flash("Import result not found.")
            return redirect(url_for("import_statement"))
        if not result["details"]["failed"]:
            flash("No failed transactions to export.")
            return redirect(url_for("import_summary", import_id=import_id))

        return Response(
            build_error_report_csv(result),
            mimetype="text/csv",
            headers={"Content-Disposition": "attachment; filename=import_error_report.csv"},
        )

    with app.app_context():
        try:
            init_db()
        except DatabaseInitError:
            pass

    app.get_db = get_db
    app.init_db = init_db
    return app
