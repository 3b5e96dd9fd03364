"""
ASGI config for the Vue docs chat backend.

Serves plain HTTP; chat answers are streamed over SSE by the view itself.
"""
import os

from django.core.asgi import get_asgi_application

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'config.settings')

application = get_asgi_application()
