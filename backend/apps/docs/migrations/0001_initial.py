# Generated migration for the documentation chunk table

from django.db import migrations, models
import pgvector.django


class Migration(migrations.Migration):

    initial = True

    dependencies = [
    ]

    operations = [
        pgvector.django.VectorExtension(),
        migrations.CreateModel(
            name='DocumentChunk',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('text', models.TextField(help_text='The text content of this chunk')),
                ('n_tokens', models.PositiveIntegerField(help_text='Number of model tokens in the chunk text')),
                ('embeddings', pgvector.django.VectorField(dimensions=1536, help_text='Vector embedding of the chunk text')),
                ('file_path', models.CharField(db_index=True, help_text="Source path with '/' encoded as '_'", max_length=500)),
            ],
            options={
                'db_table': 'documents',
                'ordering': ['file_path', 'id'],
            },
        ),
    ]
