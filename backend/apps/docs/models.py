"""
Documentation chunk model.

The corpus is populated offline (one row per chunk of a scraped docs page);
the chat pipeline only reads it.
"""
from django.db import models
from pgvector.django import VectorField


class DocumentChunk(models.Model):
    """
    A text chunk of a documentation page with its embedding vector.

    ``file_path`` is the flattened source path of the scraped page, e.g.
    ``vuejsorg_guide_reactivity.txt``; retrieval turns it back into the
    public URL of the page.
    """
    # Chunk text content
    text = models.TextField(
        help_text="The text content of this chunk"
    )

    # Token count used for context budget packing
    n_tokens = models.PositiveIntegerField(
        help_text="Number of model tokens in the chunk text"
    )

    # Vector embedding (text-embedding-ada-002 uses 1536 dimensions)
    embeddings = VectorField(
        dimensions=1536,
        help_text="Vector embedding of the chunk text"
    )

    # Flattened source path of the page the chunk came from
    file_path = models.CharField(
        max_length=500,
        db_index=True,
        help_text="Source path with '/' encoded as '_'"
    )

    class Meta:
        db_table = 'documents'
        ordering = ['file_path', 'id']

    def __str__(self):
        preview = self.text[:50] + '...' if len(self.text) > 50 else self.text
        return f"Chunk {self.pk} of {self.file_path}: {preview}"
