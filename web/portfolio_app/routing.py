from django.urls import path

from portfolio_app.consumers import PortfolioConsumer

websocket_urlpatterns = [
    path("ws/portfolio/", PortfolioConsumer.as_asgi()),
]
