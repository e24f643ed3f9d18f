from django.contrib import admin
from .models import Product

@admin.register(Product)
class ProductAdmin(admin.ModelAdmin):
    list_display = ("name", "sku", "price", "sale_price", "stock", "is_active", "updated_at")
    search_fields = ("name", "sku")
    list_filter = ("is_active",)
    readonly_fields = ("created_at", "updated_at")
