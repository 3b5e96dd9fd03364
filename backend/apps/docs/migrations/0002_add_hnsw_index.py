"""
Migration to add HNSW index on documents.embeddings for fast vector search.

HNSW (Hierarchical Navigable Small World) provides:
- Fast approximate nearest neighbor search
- No need to pre-train like IVFFlat
- Good balance of speed and recall
"""
from django.db import migrations


class Migration(migrations.Migration):

    dependencies = [
        ('docs', '0001_initial'),
    ]

    operations = [
        # Cosine distance, matching the <=> operator used by retrieval
        migrations.RunSQL(
            sql="""
                CREATE INDEX IF NOT EXISTS documents_embeddings_hnsw_idx
                ON documents
                USING hnsw (embeddings vector_cosine_ops)
                WITH (m = 16, ef_construction = 64);
            """,
            reverse_sql="DROP INDEX IF EXISTS documents_embeddings_hnsw_idx;"
        ),
    ]
