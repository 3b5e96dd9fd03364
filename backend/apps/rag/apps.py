from django.apps import AppConfig


class RagConfig(AppConfig):
    name = 'apps.rag'
    verbose_name = 'Docs Chat RAG Pipeline'

    def ready(self):
        from apps.rag import checks  # noqa: F401
