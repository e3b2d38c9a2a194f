from django.apps import AppConfig


class BatchRoutingConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'batch_routing'
    verbose_name = 'Multi-Order Route Optimization Engine'
