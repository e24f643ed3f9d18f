def _iso(dt):
    return dt.isoformat() if dt else None


def serialize_payment(payment) -> dict:
    return {
        "id": str(payment.pk),
        "order_id": str(payment.order_id) if payment.order_id else None,
        "user_id": payment.user_id,
        "method": payment.method,
        "status": payment.status,
        "amount": str(payment.amount),
        "currency": payment.currency,
        "correlation_id": payment.external_id,
        "transaction_id": payment.transaction_id,
        "failure_reason": payment.failure_reason,
        "initiated_at": _iso(payment.initiated_at),
        "completed_at": _iso(payment.completed_at),
        "failed_at": _iso(payment.failed_at),
        "refunded_at": _iso(payment.refunded_at),
        "created_at": _iso(payment.created_at),
    }
