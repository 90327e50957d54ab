import logging
import sys

from django.apps import AppConfig

logger = logging.getLogger("portfolio_app")


class PortfolioAppConfig(AppConfig):
    name = "portfolio_app"
    default_auto_field = "django.db.models.BigAutoField"

    def ready(self):
        # daphne is an installed app, so sys.modules always has it; check argv instead
        if any(name in arg for arg in sys.argv for name in ("daphne", "uvicorn", "runserver")):
            from portfolio_app.engine import ServiceHolder
            ServiceHolder.instance()
