import uuid

import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ("catalog", "0001_initial"),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Order",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("subtotal", models.DecimalField(decimal_places=2, max_digits=12)),
                ("shipping_cost", models.DecimalField(decimal_places=2, default=0, max_digits=12)),
                ("discount_amount", models.DecimalField(decimal_places=2, default=0, max_digits=12)),
                ("total_amount", models.DecimalField(decimal_places=2, max_digits=12)),
                ("currency", models.CharField(default="NPR", max_length=8)),
                ("shipping_address", models.JSONField(default=dict)),
                ("notes", models.TextField(blank=True, default="")),
                ("admin_notes", models.TextField(blank=True, default="")),
                ("status", models.CharField(
                    choices=[("PENDING", "Pending"), ("CONFIRMED", "Confirmed"), ("SHIPPED", "Shipped"),
                             ("DELIVERED", "Delivered"), ("CANCELLED", "Cancelled")],
                    db_index=True, default="PENDING", max_length=16)),
                ("payment_method", models.CharField(
                    choices=[("COD", "Cash on delivery"), ("KHALTI", "Khalti"), ("ESEWA", "eSewa")],
                    max_length=16)),
                ("payment_status", models.CharField(
                    choices=[("PENDING", "Pending"), ("PAID", "Paid"), ("FAILED", "Failed"), ("REFUNDED", "Refunded")],
                    db_index=True, default="PENDING", max_length=16)),
                ("payment_ref", models.CharField(blank=True, default="", max_length=128)),
                ("tracking_number", models.CharField(blank=True, default="", max_length=64)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("user", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="orders",
                                           to=settings.AUTH_USER_MODEL)),
            ],
            options={"ordering": ["-created_at"]},
        ),
        migrations.CreateModel(
            name="OrderItem",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("product_name", models.CharField(max_length=200)),
                ("quantity", models.PositiveIntegerField()),
                ("unit_price", models.DecimalField(decimal_places=2, max_digits=12)),
                ("size", models.CharField(blank=True, default="", max_length=16)),
                ("color", models.CharField(blank=True, default="", max_length=32)),
                ("order", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="items",
                                            to="orders.order")),
                ("product", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL,
                                              related_name="+", to="catalog.product")),
            ],
            options={"ordering": ["id"]},
        ),
        migrations.AddConstraint(
            model_name="order",
            constraint=models.CheckConstraint(check=models.Q(total_amount__gte=0), name="order_total_non_negative"),
        ),
        migrations.AddConstraint(
            model_name="orderitem",
            constraint=models.CheckConstraint(check=models.Q(quantity__gte=1), name="order_item_quantity_positive"),
        ),
    ]
