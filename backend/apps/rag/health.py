"""
Health endpoints.

- /healthz answers while the process runs.
- /readyz requires a populated documents table and a reachable usage log;
  the completion provider is reported but never takes the service out of
  rotation, since its outages already turn into per-request 503s.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

import httpx
import redis
from django.conf import settings
from django.db import DatabaseError
from django.http import JsonResponse
from django.views.decorators.http import require_GET

from apps.docs.models import DocumentChunk

logger = logging.getLogger(__name__)

# provider -> (base URL setting, default base URL, cheap GET path)
PROVIDER_STATUS_ENDPOINTS = {
    'openai': ('OPENAI_BASE_URL', 'https://api.openai.com/v1', '/models'),
    'ollama': ('OLLAMA_BASE_URL', 'http://ollama:11434', '/api/version'),
}


def get_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


@require_GET
def healthz(request):
    """Liveness only; dependencies are the business of /readyz."""
    return JsonResponse({'status': 'healthy', 'timestamp': get_timestamp()})


def check_documents() -> tuple[str, bool]:
    """The documents table answers and holds something to retrieve."""
    try:
        populated = DocumentChunk.objects.exists()
    except DatabaseError as e:
        logger.error(f"Document store check failed: {e}")
        return f'error: {str(e)[:50]}', False

    if not populated:
        # Every answer would be the out-of-scope refusal
        return 'empty: no documentation chunks loaded', False
    return 'ok', True


def check_usage_log() -> tuple[str, bool]:
    try:
        redis_url = getattr(settings, 'REDIS_URL', 'redis://redis:6379/0')
        redis.from_url(redis_url, socket_timeout=3, socket_connect_timeout=3).ping()
    except redis.RedisError as e:
        logger.error(f"Usage log check failed: {e}")
        return f'error: {str(e)[:50]}', False
    return 'ok', True


def check_completion_provider(transport: Optional[httpx.BaseTransport] = None) -> tuple[str, bool]:
    """Reachability of the completion provider (informational)."""
    provider = getattr(settings, 'LLM_PROVIDER', 'openai').lower()
    setting, default_url, path = PROVIDER_STATUS_ENDPOINTS.get(provider, PROVIDER_STATUS_ENDPOINTS['openai'])

    headers = {}
    if provider != 'ollama':
        api_key = getattr(settings, 'OPENAI_API_KEY', '')
        if not api_key:
            return 'degraded: OPENAI_API_KEY not configured', True
        headers['Authorization'] = f"Bearer {api_key}"

    try:
        with httpx.Client(timeout=5.0, transport=transport) as client:
            response = client.get(f"{getattr(settings, setting, default_url)}{path}", headers=headers)
    except httpx.HTTPError as e:
        logger.warning(f"{provider} health check failed: {e}")
        return f'degraded: {str(e)[:30]}', True

    if response.status_code != 200:
        return f'status: {response.status_code}', True
    return 'ok', True


@require_GET
def readyz(request):
    checks = {}
    ready = True

    for name, check, critical in (
        ('documents', check_documents, True),
        ('usage_log', check_usage_log, True),
        ('llm', check_completion_provider, False),
    ):
        status, ok = check()
        checks[name] = status
        if critical and not ok:
            ready = False

    return JsonResponse(
        {
            'status': 'ready' if ready else 'not_ready',
            'timestamp': get_timestamp(),
            'checks': checks,
        },
        status=200 if ready else 503,
    )
