from django.contrib import admin
from .models import Order, OrderItem


class OrderItemInline(admin.TabularInline):
    model = OrderItem
    extra = 0
    readonly_fields = ("product", "product_name", "quantity", "unit_price", "size", "color")
    can_delete = False


@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):
    list_display = ("id", "user", "status", "payment_method", "payment_status", "total_amount", "currency", "created_at")
    search_fields = ("id", "payment_ref", "tracking_number", "user__username", "user__email")
    list_filter = ("status", "payment_status", "payment_method", "created_at")
    readonly_fields = ("subtotal", "shipping_cost", "discount_amount", "total_amount", "payment_ref", "created_at", "updated_at")
    inlines = [OrderItemInline]
