"""
RAG (Retrieval Augmented Generation) app for the Vue.js docs chat.

Provides:
- Query embedding via OpenAI or Ollama
- Token-budgeted retrieval from the pgvector documents table
- Prompt assembly with persona, history and context
- Streamed answers with a citation side-channel
"""
