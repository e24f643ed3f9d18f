import uuid

from django.conf import settings
from django.db import models

from orders.models import PaymentMethod


class PaymentStatus(models.TextChoices):
    PENDING = "PENDING", "Pending"
    SUCCESS = "SUCCESS", "Success"
    FAILED = "FAILED", "Failed"
    REFUNDED = "REFUNDED", "Refunded"


PAYMENT_TRANSITIONS = {
    PaymentStatus.PENDING: {PaymentStatus.SUCCESS, PaymentStatus.FAILED},
    PaymentStatus.SUCCESS: {PaymentStatus.REFUNDED},
    PaymentStatus.FAILED: set(),
    PaymentStatus.REFUNDED: set(),
}

TERMINAL_STATUSES = (PaymentStatus.SUCCESS, PaymentStatus.FAILED, PaymentStatus.REFUNDED)


class Payment(models.Model):
    """One attempt to settle an order through a gateway."""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    # Null while a deferred (draft) order waits for the payment to succeed
    order = models.ForeignKey("orders.Order", on_delete=models.CASCADE, null=True, blank=True, related_name="payments")
    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name="payments")

    amount = models.DecimalField(max_digits=12, decimal_places=2)
    currency = models.CharField(max_length=8, default="NPR")
    method = models.CharField(max_length=16, choices=PaymentMethod.choices)
    status = models.CharField(max_length=16, choices=PaymentStatus.choices, default=PaymentStatus.PENDING, db_index=True)

    external_id = models.CharField(max_length=128, unique=True, null=True, blank=True)  # gateway correlation id
    transaction_id = models.CharField(max_length=128, blank=True, default="")
    gateway_response = models.JSONField(blank=True, null=True)
    metadata = models.JSONField(blank=True, default=dict)
    failure_reason = models.CharField(max_length=255, blank=True, default="")

    initiated_at = models.DateTimeField(blank=True, null=True)
    completed_at = models.DateTimeField(blank=True, null=True)
    failed_at = models.DateTimeField(blank=True, null=True)
    refunded_at = models.DateTimeField(blank=True, null=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["order"],
                condition=models.Q(status="SUCCESS"),
                name="one_successful_payment_per_order",
            ),
        ]

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_paid(self) -> bool:
        return self.status == PaymentStatus.SUCCESS

    def __str__(self):
        return f"{self.method} {self.external_id or self.pk} ({self.status})"
