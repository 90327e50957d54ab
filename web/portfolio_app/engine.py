"""
Process-wide ValuationService for the web layer.

Built lazily on first use from ``settings.VALUATION_CONFIG``; tests swap in
their own service with ``ServiceHolder.install``.
"""

import logging
import threading

from django.conf import settings

from valuation_engine import ValuationService

logger = logging.getLogger("portfolio_app")


class ServiceHolder:
    """Singleton access to the running ValuationService."""

    _instance = None
    _lock = threading.Lock()

    @classmethod
    def instance(cls):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = cls._build()
        return cls._instance

    @staticmethod
    def _build():
        config = settings.VALUATION_CONFIG
        service = ValuationService(config)
        if config.price_source != "static":
            service.start_polling()
        logger.info(f"Valuation service ready (source={config.price_source})")
        return service

    @classmethod
    def install(cls, service):
        """Replace the current service (closing the old one). Returns the new one."""
        with cls._lock:
            old, cls._instance = cls._instance, service
        if old is not None and old is not service:
            old.close()
        return service

    @classmethod
    def shutdown(cls):
        with cls._lock:
            old, cls._instance = cls._instance, None
        if old is not None:
            old.close()
