"""
Shared pytest setup: configure Django before test modules import app code.
"""
import os

import django
import pytest

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'config.settings')
django.setup()


@pytest.fixture(autouse=True)
def reset_singletons():
    """Drop cached clients so one test's fakes never leak into the next."""
    from apps.rag.llm_client import reset_llm_client
    from apps.rag.retrieval import set_document_store
    import apps.usage.ratelimit as ratelimit

    yield

    reset_llm_client()
    set_document_store(None)
    ratelimit._limiter = None
