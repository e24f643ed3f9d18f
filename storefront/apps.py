from django.apps import AppConfig


class StorefrontConfig(AppConfig):
    name = "storefront"
    verbose_name = "Storefront"
    services = None

    def ready(self):
        from .container import build_services

        self.services = build_services()
