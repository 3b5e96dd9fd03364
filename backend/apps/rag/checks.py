"""
System checks for the embedding configuration.

Query vectors, the configured dimension and the documents.embeddings column
must all agree, otherwise every chat request fails with a 503.
"""
from django.conf import settings
from django.core.checks import Warning, register

# Output size of embedding models commonly used with this service
KNOWN_EMBEDDING_DIMENSIONS = {
    'text-embedding-ada-002': 1536,
    'text-embedding-3-small': 1536,
    'text-embedding-3-large': 3072,
    'nomic-embed-text': 768,
    'mxbai-embed-large': 1024,
    'all-minilm': 384,
}


def configured_embed_model() -> str:
    provider = getattr(settings, 'EMBEDDING_PROVIDER', 'openai').lower()
    if provider == 'ollama':
        model = getattr(settings, 'OLLAMA_EMBED_MODEL', 'nomic-embed-text')
    else:
        model = getattr(settings, 'OPENAI_EMBED_MODEL', 'text-embedding-ada-002')
    # Ollama tags ("nomic-embed-text:latest") share the base model's size
    return model.split(':', 1)[0]


@register()
def check_embedding_dimension(app_configs, **kwargs):
    from apps.docs.models import DocumentChunk

    warnings = []
    expected = getattr(settings, 'EMBEDDING_DIMENSION', 1536)
    model = configured_embed_model()

    produced = KNOWN_EMBEDDING_DIMENSIONS.get(model)
    if produced is not None and produced != expected:
        warnings.append(Warning(
            f"Embedding model '{model}' returns {produced}-dimensional vectors "
            f"but EMBEDDING_DIMENSION is {expected}.",
            hint=f"Set EMBEDDING_DIMENSION={produced} or pick a {expected}-dimensional model.",
            id='rag.W001',
        ))

    column = DocumentChunk._meta.get_field('embeddings').dimensions
    if column != expected:
        warnings.append(Warning(
            f"EMBEDDING_DIMENSION is {expected} but documents.embeddings "
            f"stores {column}-dimensional vectors.",
            hint="Migrate the embeddings column to the dimension of the embedding model.",
            id='rag.W002',
        ))

    return warnings
