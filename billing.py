# Keystone Billing — one invoice per settled milestone
#
# An invoice is issued in the same transaction that settles a milestone, so a
# completed milestone always has exactly one invoice and a rolled-back
# settlement never leaves one behind.
#
#   release  status=issued    full amount billed, fee withheld from the payout
#   refund   status=refunded  nothing paid out, whole amount back to the client
#   split    status=partial   part paid out, the remainder refunded
#
# Numbers are sequential per client: INV-<client_id>-00001, -00002, ...

import logging
from decimal import Decimal
from typing import Optional

from models import Invoice, Job, Milestone, SettlementIntent, money_str
from store import EntityStore

log = logging.getLogger("keystone")

ZERO = Decimal("0.00")


class BillingEngine:
    """Issues and reads milestone invoices."""

    def __init__(self, db, store=None):
        self.db = db
        self.store = store or EntityStore()

    def next_invoice_number(self, conn, client_id: str) -> str:
        conn.execute(
            """INSERT INTO invoice_counters (client_id, last_number) VALUES (?, 1)
               ON CONFLICT(client_id) DO UPDATE
               SET last_number = invoice_counters.last_number + 1""",
            (client_id,),
        )
        row = conn.execute(
            "SELECT last_number FROM invoice_counters WHERE client_id = ?", (client_id,)
        ).fetchone()
        return f"INV-{client_id}-{row['last_number']:05d}"

    def issue_invoice(self, conn, job: Job, milestone: Milestone,
                      intents: list[SettlementIntent], now: float) -> Invoice:
        """Invoice a settled milestone from its confirmed payout intents.

        Fees were fixed when the intents were recorded; this only totals them.
        Issuing twice for the same milestone returns the existing invoice.
        """
        existing = self.store.invoice_for_milestone(conn, milestone.milestone_id)
        if existing is not None:
            return existing

        paid_out = sum((i.amount for i in intents if i.to_party == job.freelancer_id), ZERO)
        fees = sum((i.fee for i in intents if i.to_party == job.freelancer_id), ZERO)
        refunded = sum((i.amount for i in intents if i.to_party == job.client_id), ZERO)

        if paid_out == ZERO:
            status = "refunded"
        elif refunded > ZERO:
            status = "partial"
        else:
            status = "issued"

        invoice = Invoice(
            invoice_number=self.next_invoice_number(conn, job.client_id),
            job_id=job.job_id,
            milestone_id=milestone.milestone_id,
            client_id=job.client_id,
            freelancer_id=job.freelancer_id or "",
            amount=milestone.amount,
            platform_fee=fees,
            net_amount=paid_out - fees,
            refunded_amount=refunded,
            status=status,
            issued_at=now,
        )
        self.store.insert(conn, invoice)
        log.info("INVOICE %s job=%s milestone=%s amount=%s fee=%s net=%s refunded=%s status=%s",
                 invoice.invoice_number, job.job_id, milestone.milestone_id,
                 money_str(invoice.amount), money_str(fees), money_str(invoice.net_amount),
                 money_str(refunded), status)
        return invoice

    # ── Queries ───────────────────────────────────────────────────────

    def invoices_for_job(self, job_id: str) -> list[Invoice]:
        with self.db.connection() as conn:
            return self.store.invoices_for_job(conn, job_id)

    def get_invoice(self, invoice_id: str) -> Optional[Invoice]:
        with self.db.connection() as conn:
            return self.store.get(conn, Invoice, invoice_id)

    def client_summary(self, client_id: str) -> dict:
        """Totals across every invoice issued to a client."""
        with self.db.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM invoices WHERE client_id = ? ORDER BY issued_at ASC",
                (client_id,),
            ).fetchall()
        invoices = [Invoice.from_row(r) for r in rows]
        return {
            "client_id": client_id,
            "invoice_count": len(invoices),
            "total_billed": money_str(sum((i.amount for i in invoices), ZERO)),
            "total_fees": money_str(sum((i.platform_fee for i in invoices), ZERO)),
            "total_paid_out": money_str(sum((i.net_amount for i in invoices), ZERO)),
            "total_refunded": money_str(sum((i.refunded_amount for i in invoices), ZERO)),
        }
