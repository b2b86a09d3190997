from django.apps import AppConfig


class RescueappConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "Rescueapp"
    verbose_name = "Roadside Rescue"
