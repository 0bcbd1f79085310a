from django.apps import AppConfig


class WaterbillConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'waterbill'
    verbose_name = 'RT Water Billing'
