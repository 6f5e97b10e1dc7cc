import random
from datetime import date

from dateutil.relativedelta import relativedelta
from werkzeug.security import generate_password_hash

from bill_tracker import create_app
from bill_tracker.bills import BillStore, build_installment_bills


SAMPLE_EXPENSES = [
    ("Supermarket", "market", "debit_card"),
    ("Bus pass", "transport", "pix"),
    ("Electricity", "utilities", "boleto"),
    ("Pharmacy", "health", "credit_card"),
    ("Streaming", "entertainment", "credit_card"),
    ("Lunch", "food", "pix"),
]


def main():
    app = create_app()
    with app.app_context():
        app.init_db()
        db = app.get_db()

        db.execute(
            "INSERT INTO users (username, password_hash) VALUES (?, ?)",
            ("demo", generate_password_hash("demo123")),
        )
        db.commit()
        user_id = db.execute("SELECT id FROM users WHERE username = 'demo'").fetchone()["id"]
        store = BillStore(db)

        first_of_month = date.today().replace(day=1)
        rows = []
        for month_offset in range(3):
            month = first_of_month - relativedelta(months=month_offset)
            rows.extend(
                build_installment_bills(
                    {
                        "name": "Salary",
                        "amount": 3500.0,
                        "transaction_type": "income",
                        "date": month.replace(day=5).isoformat(),
                        "category": "salary",
                        "payment_method": "transfer",
                        "is_recurring": True,
                    },
                    user_id,
                )
            )
            for i in range(10):
                name, category, payment_method = random.choice(SAMPLE_EXPENSES)
                rows.extend(
                    build_installment_bills(
                        {
                            "name": name,
                            "amount": round(random.uniform(5, 200), 2),
                            "transaction_type": "expense",
                            "date": month.replace(day=random.randint(1, 28)).isoformat(),
                            "category": category,
                            "payment_method": payment_method,
                        },
                        user_id,
                    )
                )

        rows.extend(
            build_installment_bills(
                {
                    "name": "Laptop",
                    "amount": 2400.0,
                    "transaction_type": "expense",
                    "date": first_of_month.isoformat(),
                    "category": "shopping",
                    "payment_method": "credit_card",
                    "installments": 6,
                },
                user_id,
            )
        )
        store.create_bills(rows)
    print("Sample data generated. Login with demo / demo123")


if __name__ == "__main__":
    main()
