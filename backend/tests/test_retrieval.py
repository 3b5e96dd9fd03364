"""
Tests for the retrieval engine.

Covers path-to-URL mapping, token budget packing, the in-memory store and
the SQL issued by the pgvector store.
"""
import pytest
from unittest.mock import patch, MagicMock

from django.db import DatabaseError
from django.test import override_settings

from apps.rag.deadline import RequestDeadline
from apps.rag.errors import DeadlineExceeded
from apps.rag.retrieval import (
    RankedChunk,
    RetrievedPassage,
    RetrievalError,
    InMemoryDocumentStore,
    PgVectorDocumentStore,
    cosine_distance,
    format_sources_markdown,
    pack_by_token_budget,
    retrieve,
    set_document_store,
    source_path_to_url,
)


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def chunk(distance, n_tokens, name=None):
    return RankedChunk(
        text=f"text {distance}",
        n_tokens=n_tokens,
        file_path=name or f"vuejsorg_guide_{distance}.txt",
        distance=distance,
    )


# ============================================================================
# URL Mapping Tests
# ============================================================================

class TestSourcePathToUrl:
    """Tests for source_path_to_url."""

    def test_guide_page(self):
        assert source_path_to_url('vuejsorg_guide_reactivity.txt') == 'https://vuejs.org/guide/reactivity'

    def test_nested_page(self):
        assert (
            source_path_to_url('vuejsorg_guide_essentials_computed.txt')
            == 'https://vuejs.org/guide/essentials/computed'
        )

    def test_hyphens_are_kept(self):
        assert (
            source_path_to_url('vuejsorg_api_sfc-script-setup.txt')
            == 'https://vuejs.org/api/sfc-script-setup'
        )

    def test_unprefixed_path_only_swaps_separators(self):
        assert source_path_to_url('other_page.txt') == 'other/page'

    def test_custom_mapping(self):
        url = source_path_to_url(
            'docs_intro.md', prefix='docs', base_url='https://example.com', extension='.md'
        )
        assert url == 'https://example.com/intro'

    @override_settings(DOCS_BASE_URL='https://staging.vuejs.org')
    def test_base_url_from_settings(self):
        assert source_path_to_url('vuejsorg_api.txt') == 'https://staging.vuejs.org/api'


# ============================================================================
# Token Budget Packing Tests
# ============================================================================

class TestPackByTokenBudget:
    """Tests for the prefix-sum packing."""

    def test_keeps_prefix_within_budget(self):
        ranked = [chunk(0.1, 1000), chunk(0.2, 600), chunk(0.3, 200), chunk(0.4, 50)]

        kept = pack_by_token_budget(ranked, 1700)

        assert [c.distance for c in kept] == [0.1, 0.2]

    def test_later_small_chunk_is_not_backfilled(self):
        """Once the running sum overflows nothing later is kept, even if it would fit."""
        ranked = [chunk(0.1, 1500), chunk(0.2, 300), chunk(0.3, 10)]

        kept = pack_by_token_budget(ranked, 1700)

        assert [c.distance for c in kept] == [0.1]

    def test_sum_equal_to_budget_is_kept(self):
        ranked = [chunk(0.1, 1000), chunk(0.2, 700)]

        assert len(pack_by_token_budget(ranked, 1700)) == 2

    def test_first_chunk_over_budget_gives_empty_context(self):
        assert pack_by_token_budget([chunk(0.1, 1701), chunk(0.2, 1)], 1700) == []

    def test_tied_distances_are_kept_or_dropped_together(self):
        """Chunks at the same distance share one cumulative sum."""
        ranked = [chunk(0.1, 1000), chunk(0.2, 600, 'a.txt'), chunk(0.2, 200, 'b.txt')]

        assert [c.distance for c in pack_by_token_budget(ranked, 1700)] == [0.1]
        assert len(pack_by_token_budget(ranked, 1800)) == 3

    def test_result_sorted_by_distance(self):
        ranked = [chunk(0.3, 10), chunk(0.1, 10), chunk(0.2, 10)]

        kept = pack_by_token_budget(ranked, 1700)

        assert [c.distance for c in kept] == [0.1, 0.2, 0.3]

    def test_budget_never_exceeded(self):
        ranked = [chunk(i / 100, (i * 37) % 400 + 1) for i in range(50)]

        for budget in (0, 1, 100, 1700, 5000):
            kept = pack_by_token_budget(ranked, budget)
            assert sum(c.n_tokens for c in kept) <= budget

    def test_duplicate_paths_are_not_deduplicated(self):
        ranked = [chunk(0.1, 10, 'same.txt'), chunk(0.2, 10, 'same.txt')]

        assert len(pack_by_token_budget(ranked, 1700)) == 2


# ============================================================================
# Store Tests
# ============================================================================

class TestCosineDistance:

    def test_identical_vectors(self):
        assert cosine_distance([1.0, 2.0], [2.0, 4.0]) == pytest.approx(0.0)

    def test_orthogonal_vectors(self):
        assert cosine_distance([1.0, 0.0], [0.0, 1.0]) == pytest.approx(1.0)

    def test_zero_vector(self):
        assert cosine_distance([0.0, 0.0], [1.0, 0.0]) == 1.0

    def test_length_mismatch(self):
        with pytest.raises(ValueError):
            cosine_distance([1.0], [1.0, 0.0])


class TestInMemoryDocumentStore:
    """Tests for the pure-Python store."""

    def setup_method(self):
        self.store = InMemoryDocumentStore([
            ("Refs hold values.", 300, [1.0, 0.0], "vuejsorg_guide_refs.txt"),
            ("Unrelated.", 300, [0.0, 1.0], "vuejsorg_about.txt"),
            ("Computed values.", 300, [1.0, 1.0], "vuejsorg_guide_computed.txt"),
        ])

    def test_nearest_first(self):
        ranked = self.store.search([1.0, 0.0], 1700)

        assert [c.file_path for c in ranked] == [
            "vuejsorg_guide_refs.txt",
            "vuejsorg_guide_computed.txt",
            "vuejsorg_about.txt",
        ]

    def test_budget_applies(self):
        ranked = self.store.search([1.0, 0.0], 650)

        assert [c.file_path for c in ranked] == [
            "vuejsorg_guide_refs.txt",
            "vuejsorg_guide_computed.txt",
        ]

    def test_add_and_len(self):
        self.store.add("More.", 1, [0.5, 0.5], "vuejsorg_more.txt")
        assert len(self.store) == 4


class TestPgVectorDocumentStore:
    """Tests for the SQL store with a mocked connection."""

    @pytest.fixture(autouse=True)
    def no_transaction(self):
        with patch('apps.rag.retrieval.transaction'):
            yield

    @patch('apps.rag.retrieval.connection')
    def test_query_and_row_mapping(self, mock_connection):
        cursor = MagicMock()
        cursor.fetchall.return_value = [
            ("Refs hold values.", 300, "vuejsorg_guide_refs.txt", 0.12),
            ("Computed values.", 250, "vuejsorg_guide_computed.txt", 0.2),
        ]
        mock_connection.cursor.return_value.__enter__.return_value = cursor

        ranked = PgVectorDocumentStore().search([0.5, 0.25], 1700)

        sql, params = cursor.execute.call_args[0]
        assert "<=>" in sql
        assert "SUM(n_tokens) OVER" in sql
        assert "cum_n_tokens <= %s" in sql
        assert params == ["[0.5,0.25]", "[0.5,0.25]", 1700]

        assert ranked[0] == RankedChunk(
            text="Refs hold values.", n_tokens=300,
            file_path="vuejsorg_guide_refs.txt", distance=0.12,
        )
        assert len(ranked) == 2
        assert cursor.execute.call_count == 1

    @patch('apps.rag.retrieval.connection')
    def test_statement_timeout_set_before_search(self, mock_connection):
        cursor = MagicMock()
        cursor.fetchall.return_value = []
        mock_connection.cursor.return_value.__enter__.return_value = cursor

        PgVectorDocumentStore().search([0.5], 1700, timeout=2.5)

        (timeout_sql, timeout_params), _ = cursor.execute.call_args_list[0]
        assert "statement_timeout" in timeout_sql
        assert timeout_params == ["2500"]
        assert "<=>" in cursor.execute.call_args_list[1][0][0]

    @patch('apps.rag.retrieval.connection')
    def test_database_error_becomes_retrieval_error(self, mock_connection):
        cursor = MagicMock()
        cursor.execute.side_effect = DatabaseError("connection refused")
        mock_connection.cursor.return_value.__enter__.return_value = cursor

        with pytest.raises(RetrievalError):
            PgVectorDocumentStore().search([0.1], 1700)


# ============================================================================
# retrieve() Tests
# ============================================================================

class TestRetrieve:

    def test_maps_paths_to_urls(self):
        store = InMemoryDocumentStore([
            ("Refs hold values.", 300, [1.0, 0.0], "vuejsorg_guide_reactivity.txt"),
        ])

        passages = retrieve([1.0, 0.0], store=store)

        assert passages == [
            RetrievedPassage(
                text="Refs hold values.",
                source_url="https://vuejs.org/guide/reactivity",
                distance=pytest.approx(0.0),
            )
        ]

    @override_settings(RAG_CONTEXT_TOKEN_BUDGET=100)
    def test_default_budget_from_settings(self):
        store = InMemoryDocumentStore([
            ("Too long.", 101, [1.0, 0.0], "vuejsorg_long.txt"),
        ])

        assert retrieve([1.0, 0.0], store=store) == []

    def test_uses_configured_store(self):
        store = MagicMock()
        store.search.return_value = []
        set_document_store(store)

        assert retrieve([1.0], token_budget=10) == []
        store.search.assert_called_once_with([1.0], 10, timeout=None)

    def test_deadline_bounds_the_search(self):
        clock = FakeClock()
        deadline = RequestDeadline(seconds=30, clock=clock)
        clock.now = 25.5
        store = MagicMock()
        store.search.return_value = []

        retrieve([1.0], token_budget=10, store=store, deadline=deadline)

        store.search.assert_called_once_with([1.0], 10, timeout=4.5)

    def test_search_cancelled_at_deadline_is_deadline_exceeded(self):
        clock = FakeClock()
        deadline = RequestDeadline(seconds=30, clock=clock)

        def slow_search(query_embedding, token_budget, timeout=None):
            clock.now = 30.0
            raise RetrievalError("canceling statement due to statement timeout")

        store = MagicMock()
        store.search.side_effect = slow_search

        with pytest.raises(DeadlineExceeded):
            retrieve([1.0], store=store, deadline=deadline)

    def test_store_failure_inside_deadline_stays_retrieval_error(self):
        store = MagicMock()
        store.search.side_effect = RetrievalError("connection refused")

        with pytest.raises(RetrievalError) as excinfo:
            retrieve([1.0], store=store, deadline=RequestDeadline(seconds=30))

        assert not isinstance(excinfo.value, DeadlineExceeded)


class TestFormatSourcesMarkdown:

    def test_empty(self):
        assert format_sources_markdown([]) == ""

    def test_lists_every_passage(self):
        passages = [
            RetrievedPassage(text="a", source_url="https://vuejs.org/guide/a", distance=0.1),
            RetrievedPassage(text="b", source_url="https://vuejs.org/guide/a", distance=0.2),
        ]

        assert format_sources_markdown(passages) == (
            "\n\n### Source\n"
            "* [https://vuejs.org/guide/a](https://vuejs.org/guide/a)\n"
            "* [https://vuejs.org/guide/a](https://vuejs.org/guide/a)\n"
        )


class TestSearchDocsCommand:
    """Tests for the search_docs management command."""

    @patch('apps.rag.management.commands.search_docs.retrieve')
    @patch('apps.rag.management.commands.search_docs.embed_query', return_value=[0.1])
    def test_prints_urls(self, mock_embed, mock_retrieve):
        from io import StringIO
        from django.core.management import call_command

        mock_retrieve.return_value = [
            RetrievedPassage(text="a", source_url="https://vuejs.org/guide/refs", distance=0.12346),
        ]
        out = StringIO()

        call_command('search_docs', 'What   is a ref?', '--budget', '500', stdout=out)

        mock_embed.assert_called_once_with("What is a ref?")
        mock_retrieve.assert_called_once_with([0.1], token_budget=500)
        assert "0.1235  https://vuejs.org/guide/refs" in out.getvalue()

    @patch('apps.rag.management.commands.search_docs.retrieve')
    @patch('apps.rag.management.commands.search_docs.embed_query', return_value=[0.1])
    def test_json_output(self, mock_embed, mock_retrieve):
        import json
        from io import StringIO
        from django.core.management import call_command

        mock_retrieve.return_value = [
            RetrievedPassage(text="Refs hold values.", source_url="https://vuejs.org/guide/refs", distance=0.12346),
        ]
        out = StringIO()

        call_command('search_docs', 'What is a ref?', '--json', stdout=out)

        assert json.loads(out.getvalue()) == [
            {"url": "https://vuejs.org/guide/refs", "text": "Refs hold values.", "distance": 0.1235},
        ]

    @patch('apps.rag.management.commands.search_docs.embed_query', side_effect=RetrievalError("down"))
    def test_upstream_failure_is_command_error(self, mock_embed):
        from django.core.management import call_command
        from django.core.management.base import CommandError

        with pytest.raises(CommandError):
            call_command('search_docs', 'What is a ref?')
