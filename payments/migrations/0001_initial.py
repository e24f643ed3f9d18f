import uuid

import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ("orders", "0001_initial"),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Payment",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("amount", models.DecimalField(decimal_places=2, max_digits=12)),
                ("currency", models.CharField(default="NPR", max_length=8)),
                ("method", models.CharField(
                    choices=[("COD", "Cash on delivery"), ("KHALTI", "Khalti"), ("ESEWA", "eSewa")],
                    max_length=16)),
                ("status", models.CharField(
                    choices=[("PENDING", "Pending"), ("SUCCESS", "Success"), ("FAILED", "Failed"),
                             ("REFUNDED", "Refunded")],
                    db_index=True, default="PENDING", max_length=16)),
                ("external_id", models.CharField(blank=True, max_length=128, null=True, unique=True)),
                ("transaction_id", models.CharField(blank=True, default="", max_length=128)),
                ("gateway_response", models.JSONField(blank=True, null=True)),
                ("metadata", models.JSONField(blank=True, default=dict)),
                ("failure_reason", models.CharField(blank=True, default="", max_length=255)),
                ("initiated_at", models.DateTimeField(blank=True, null=True)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("failed_at", models.DateTimeField(blank=True, null=True)),
                ("refunded_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("order", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.CASCADE,
                                            related_name="payments", to="orders.order")),
                ("user", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="payments",
                                           to=settings.AUTH_USER_MODEL)),
            ],
            options={"ordering": ["-created_at"]},
        ),
        migrations.AddConstraint(
            model_name="payment",
            constraint=models.UniqueConstraint(condition=models.Q(status="SUCCESS"), fields=("order",),
                                               name="one_successful_payment_per_order"),
        ),
    ]
