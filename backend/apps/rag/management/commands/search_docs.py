"""
Django management command to inspect retrieval for a question.

Usage:
    python manage.py search_docs "How do computed properties work?"
    python manage.py search_docs --budget 500 "What is a ref?"
    python manage.py search_docs --json "What is a ref?"
"""
import json

from django.core.management.base import BaseCommand, CommandError

from apps.rag.embeddings import QueryValidationError, embed_query, normalize_query
from apps.rag.errors import UpstreamUnavailable
from apps.rag.retrieval import retrieve


class Command(BaseCommand):
    help = 'Show which documentation passages a question would be answered from'

    def add_arguments(self, parser):
        parser.add_argument('question', help='Question to retrieve context for')
        parser.add_argument(
            '--budget',
            type=int,
            default=None,
            help='Token budget for the packed context (defaults to RAG_CONTEXT_TOKEN_BUDGET)',
        )
        parser.add_argument(
            '--json',
            action='store_true',
            help='Print the passages with their text as JSON',
        )

    def handle(self, *args, **options):
        try:
            query = normalize_query(options['question'])
        except QueryValidationError as e:
            raise CommandError(str(e))

        try:
            passages = retrieve(embed_query(query), token_budget=options['budget'])
        except UpstreamUnavailable as e:
            raise CommandError(f'Retrieval failed: {e}')

        if options['json']:
            self.stdout.write(json.dumps([p.to_dict() for p in passages], indent=2))
            return

        if not passages:
            self.stdout.write('No passages fit the token budget')
            return

        for passage in passages:
            self.stdout.write(f'{passage.distance:.4f}  {passage.source_url}')
        self.stdout.write(self.style.SUCCESS(f'{len(passages)} passages'))
