from booking_engine.payments.ledger import IdempotencyLedger
from booking_engine.payments.reconciler import PaymentReconciler
from booking_engine.payments.verifier import SignatureScheme, WebhookVerifier

__all__ = [
    "PaymentReconciler",
    "WebhookVerifier",
    "SignatureScheme",
    "IdempotencyLedger",
]
