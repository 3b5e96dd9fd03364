"""
Django settings for the Docs Chat backend.
"""
import os
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# Build paths inside the project like this: BASE_DIR / 'subdir'.
BASE_DIR = Path(__file__).resolve().parent.parent

# SECURITY WARNING: keep the secret key used in production secret!
SECRET_KEY = os.getenv('SECRET_KEY', 'django-insecure-dev-key-change-in-production')

# SECURITY WARNING: don't run with debug turned on in production!
DEBUG = os.getenv('DEBUG', 'False').lower() in ('true', '1', 'yes')

ALLOWED_HOSTS = [
    h.strip() for h in os.getenv('ALLOWED_HOSTS', 'localhost,127.0.0.1').split(',')
]

# Application definition
INSTALLED_APPS = [
    'django.contrib.contenttypes',
    'django.contrib.auth',
    'apps.docs',
    'apps.usage',
    'apps.rag',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.middleware.common.CommonMiddleware',
]

ROOT_URLCONF = 'config.urls'

TEMPLATES = []

ASGI_APPLICATION = 'config.asgi.application'

# Database
# Using environment variable for database URL
DATABASE_URL = os.getenv('DATABASE_URL', '')
if DATABASE_URL:
    import re
    match = re.match(
        r'postgres(?:ql)?://(?P<user>[^:]+):(?P<password>[^@]+)@(?P<host>[^:/]+):(?P<port>\d+)/(?P<name>[^?]+)',
        DATABASE_URL
    )
    if match:
        DATABASES = {
            'default': {
                'ENGINE': 'django.db.backends.postgresql',
                'NAME': match.group('name'),
                'USER': match.group('user'),
                'PASSWORD': match.group('password'),
                'HOST': match.group('host'),
                'PORT': match.group('port'),
            }
        }
    else:
        DATABASES = {
            'default': {
                'ENGINE': 'django.db.backends.sqlite3',
                'NAME': BASE_DIR / 'db.sqlite3',
            }
        }
else:
    DATABASES = {
        'default': {
            'ENGINE': 'django.db.backends.sqlite3',
            'NAME': BASE_DIR / 'db.sqlite3',
        }
    }

# Password validation (minimal for API-only backend)
AUTH_PASSWORD_VALIDATORS = []

# Internationalization
LANGUAGE_CODE = 'en-us'
TIME_ZONE = 'UTC'
USE_I18N = True
USE_TZ = True

# Default primary key field type
DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

# =============================================================================
# Redis (usage log)
# =============================================================================
REDIS_URL = os.getenv('REDIS_URL', 'redis://redis:6379/0')

# =============================================================================
# Usage limiting
# =============================================================================
# Admitted requests allowed per client within the sliding window
USAGE_MAX_REQUESTS = int(os.getenv('USAGE_MAX_REQUESTS', '3'))
USAGE_WINDOW_SECONDS = int(os.getenv('USAGE_WINDOW_SECONDS', '600'))  # 10 min

# Usage records older than this are swept from the log (never below the window)
USAGE_RETENTION_SECONDS = max(
    int(os.getenv('USAGE_RETENTION_SECONDS', '86400')),
    USAGE_WINDOW_SECONDS,
)

# Admit requests when Redis is unreachable (set False to answer 503 instead)
USAGE_FAIL_OPEN = os.getenv('USAGE_FAIL_OPEN', 'True').lower() in ('true', '1', 'yes')

# =============================================================================
# Providers
# =============================================================================
# "openai" (default) or "ollama"
LLM_PROVIDER = os.getenv('LLM_PROVIDER', 'openai')
EMBEDDING_PROVIDER = os.getenv('EMBEDDING_PROVIDER', 'openai')

OPENAI_API_KEY = os.getenv('OPENAI_API_KEY', '')
OPENAI_BASE_URL = os.getenv('OPENAI_BASE_URL', 'https://api.openai.com/v1')
OPENAI_CHAT_MODEL = os.getenv('OPENAI_CHAT_MODEL', 'gpt-4-turbo')
OPENAI_EMBED_MODEL = os.getenv('OPENAI_EMBED_MODEL', 'text-embedding-ada-002')

OLLAMA_BASE_URL = os.getenv('OLLAMA_BASE_URL', 'http://ollama:11434')
# nomic-embed-text returns 768-dim vectors while the documents table ships
# with vector(1536). Serving from Ollama means EMBEDDING_DIMENSION=768, a
# migration of documents.embeddings and a corpus embedded with the same model.
# `manage.py check` warns about these mismatches.
OLLAMA_EMBED_MODEL = os.getenv('OLLAMA_EMBED_MODEL', 'nomic-embed-text')
OLLAMA_CHAT_MODEL = os.getenv('OLLAMA_CHAT_MODEL', 'llama3.2')

# Must match the dimension of the documents.embeddings column
EMBEDDING_DIMENSION = int(os.getenv('EMBEDDING_DIMENSION', '1536'))

LLM_TEMPERATURE = float(os.getenv('LLM_TEMPERATURE', '0.7'))

# Longest silence tolerated between completion stream chunks (seconds).
# Capped by the time left on the request deadline when the call starts.
LLM_STREAM_READ_TIMEOUT = float(os.getenv('LLM_STREAM_READ_TIMEOUT', '30'))

# =============================================================================
# Chat pipeline
# =============================================================================
# Hard ceiling for a request to start streaming (seconds)
REQUEST_DEADLINE_SECONDS = float(os.getenv('REQUEST_DEADLINE_SECONDS', '30'))

# Maximum cumulative n_tokens of retrieved chunks packed into the prompt
RAG_CONTEXT_TOKEN_BUDGET = int(os.getenv('RAG_CONTEXT_TOKEN_BUDGET', '1700'))

MAX_QUERY_LENGTH = int(os.getenv('MAX_QUERY_LENGTH', '2000'))

# Source path -> documentation URL rewriting
DOCS_PATH_PREFIX = os.getenv('DOCS_PATH_PREFIX', 'vuejsorg')
DOCS_BASE_URL = os.getenv('DOCS_BASE_URL', 'https://vuejs.org')
DOCS_PATH_EXTENSION = os.getenv('DOCS_PATH_EXTENSION', '.txt')

# =============================================================================
# Logging
# =============================================================================
LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '{levelname} {asctime} {module} {message}',
            'style': '{',
        },
        'json': {
            'format': '%(message)s',  # Audit logs are already JSON
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'verbose',
        },
        'audit': {
            'class': 'logging.StreamHandler',
            'formatter': 'json',
        },
    },
    'root': {
        'handlers': ['console'],
        'level': 'INFO',
    },
    'loggers': {
        'apps.usage': {
            'handlers': ['console'],
            'level': 'DEBUG',
            'propagate': False,
        },
        'apps.rag': {
            'handlers': ['console'],
            'level': 'DEBUG',
            'propagate': False,
        },
        'audit': {
            'handlers': ['audit'],
            'level': 'INFO',
            'propagate': False,
        },
    },
}
