from django.apps import AppConfig


class BillingConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'billing'
    verbose_name = 'Billing & Settlement'

    def ready(self):
        from billing.resolver import initialize_resolver

        initialize_resolver()
