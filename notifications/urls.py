from django.urls import path
from . import views
app_name = "notifications"
urlpatterns = [
    path("token", views.socket_token_view, name="token"),
]
