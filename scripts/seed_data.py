# Seed a demo account with one welcome batch
from sqlalchemy.orm import Session
from credit_ledger.db import Base, SessionLocal, engine
from credit_ledger.services.accounts import create_account
from credit_ledger.services.reconciler import PaymentEvent, reconcile

def main():
    Base.metadata.create_all(bind=engine)
    db: Session = SessionLocal()
    try:
        account = create_account(db, "demo@example.com")
        result = reconcile(db, PaymentEvent(
            event_id="seed_demo_professional",
            customer_email=account.email,
            amount_paid_cents=200,
        ))
        print("Seeded demo account:", account.email, "batch:", result.batch_id, "duplicate:", result.duplicate)
    finally:
        db.close()

if __name__ == "__main__":
    main()
