from django.contrib import admin
from .models import Payment

@admin.register(Payment)
class PaymentAdmin(admin.ModelAdmin):
    list_display = ("id", "order", "method", "status", "amount", "currency", "external_id", "created_at", "updated_at")
    search_fields = ("id", "external_id", "transaction_id", "order__id", "user__username", "user__email")
    list_filter = ("method", "status", "currency", "created_at")
    readonly_fields = ("created_at", "updated_at", "initiated_at", "completed_at", "failed_at", "refunded_at", "gateway_response")
