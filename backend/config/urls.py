"""
URL configuration for the Vue docs chat backend.
"""
from django.urls import path, include

from apps.rag.health import healthz, readyz


urlpatterns = [
    # Health check endpoints (no rate limit)
    path('healthz', healthz, name='healthz'),
    path('readyz', readyz, name='readyz'),

    # API routes
    path('api/', include('apps.rag.urls')),
]
