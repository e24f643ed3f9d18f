from django.urls import path
from . import views
app_name = "orders"
urlpatterns = [
    path("", views.orders_view, name="list"),
    path("stats", views.order_stats_view, name="stats"),
    path("<uuid:order_id>", views.order_detail_view, name="detail"),
    path("<uuid:order_id>/status", views.order_status_view, name="status"),
]
