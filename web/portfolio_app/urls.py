from django.urls import path

from portfolio_app import views

urlpatterns = [
    path("api/health/", views.health),
    path("api/portfolio/", views.portfolio),
    path("api/portfolio/positions/", views.positions),
    path("api/portfolio/positions/<str:position_id>/", views.position_detail),
    path("api/portfolio/analysis/risk/", views.risk_analysis),
    path("api/portfolio/analysis/performance/", views.performance_analysis),
    path("api/portfolio/analysis/stress/", views.stress_analysis),
    path("api/update-price/", views.update_price),
    path("api/instruments/", views.instruments),
    path("api/instruments/<str:instrument_id>/", views.instrument_detail),
    path("api/instruments/<str:instrument_id>/value/", views.instrument_value),
    path("api/transactions/", views.transactions),
    path("api/transactions/<str:transaction_id>/", views.transaction_detail),
]
