from django.urls import path
from . import views
app_name = "payments"
urlpatterns = [
    path("initiate", views.initiate_payment_view, name="initiate"),
    path("initiate-with-order", views.initiate_with_order_view, name="initiate_with_order"),
    path("cod/process", views.cod_process_view, name="cod_process"),
    path("verify", views.verify_payment_view, name="verify"),
    path("khalti/callback", views.khalti_callback_view, name="khalti_callback"),  # KHALTI_RETURN_URL
    path("esewa/success", views.esewa_success_view, name="esewa_success"),  # ESEWA_SUCCESS_URL
    path("order/<uuid:order_id>", views.order_payments_view, name="order_payments"),
    path("<uuid:payment_id>/collect", views.collect_payment_view, name="collect"),
    path("<uuid:payment_id>/refund", views.refund_payment_view, name="refund"),
]
