"""
Chat API views.

Provides endpoints for:
- Chat (usage guard + retrieval + streamed LLM answer)
"""
import logging
import json

from django.core.handlers.asgi import ASGIRequest
from django.http import JsonResponse, StreamingHttpResponse
from django.views import View
from django.views.decorators.csrf import csrf_exempt
from django.utils.decorators import method_decorator

from apps.usage.ratelimit import usage_limited, check_chat_usage
from apps.usage.audit import audit_chat_completed, audit_chat_failed
from apps.rag.deadline import RequestDeadline
from apps.rag.embeddings import (
    normalize_query,
    embed_query,
    QueryValidationError,
)
from apps.rag.errors import UpstreamUnavailable
from apps.rag.prompts import build_prompt
from apps.rag.retrieval import retrieve
from apps.rag.streaming import CompletionStreamer, INTERNAL_ERROR

logger = logging.getLogger(__name__)


def validation_error(message: str) -> JsonResponse:
    return JsonResponse({"error": message, "code": "VALIDATION_ERROR"}, status=400)


def validate_conversation(messages) -> str:
    """
    Check the client conversation and return the newest message's content.

    Raises:
        QueryValidationError: If the conversation is malformed
    """
    if not isinstance(messages, list) or not messages:
        raise QueryValidationError("messages must be a non-empty list")

    for message in messages:
        if not isinstance(message, dict):
            raise QueryValidationError("each message must be an object with role and content")

    return messages[-1].get("content")


@method_decorator(csrf_exempt, name='dispatch')
@method_decorator(usage_limited(check_chat_usage), name='post')
class ChatView(View):
    """
    POST /api/chat

    Answer the newest message of a conversation from the documentation.

    Request body:
        {
            "messages": [
                {"role": "user", "content": "What is a ref?"},
                {"role": "assistant", "content": "A ref is..."},
                {"role": "user", "content": "And reactive()?"}
            ]
        }

    Response (text/event-stream):
        event: token
        data: {"text": "reactive() "}

        event: sources
        data: {"sources": ["https://vuejs.org/guide/..."], "markdown": "..."}

        event: done
        data: {}
    """

    http_method_names = ['post']

    def post(self, request):
        try:
            body = json.loads(request.body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            return validation_error("Invalid JSON")

        if not isinstance(body, dict):
            return validation_error("Request body must be a JSON object")

        # Validate conversation and newest question
        messages = body.get("messages")
        try:
            query = normalize_query(validate_conversation(messages))
        except QueryValidationError as e:
            return validation_error(str(e))

        deadline = RequestDeadline()

        try:
            query_embedding = embed_query(query, timeout=deadline.remaining())
            passages = retrieve(query_embedding, deadline=deadline)
            prompt = build_prompt(messages, passages)

            stream = CompletionStreamer().open(
                prompt,
                passages,
                deadline,
                on_complete=lambda delta_count: audit_chat_completed(
                    request,
                    query_length=len(query),
                    history_length=len(messages) - 1,
                    source_count=len(passages),
                    delta_count=delta_count,
                ),
                on_failure=lambda code: audit_chat_failed(request, code=code, streamed=True),
            )
        except UpstreamUnavailable as e:
            logger.error(f"Chat request failed before streaming ({e.code}): {e}")
            audit_chat_failed(request, code=e.code, streamed=False)
            return JsonResponse(
                {"error": "Service temporarily unavailable", "code": e.code},
                status=e.status
            )
        except Exception as e:
            logger.exception(f"Unexpected error in chat request: {e}")
            audit_chat_failed(request, code=INTERNAL_ERROR, streamed=False)
            return JsonResponse(
                {"error": "Internal server error", "code": INTERNAL_ERROR},
                status=500
            )

        logger.info(
            f"Streaming answer: query_length={len(query)}, history={len(messages) - 1}, "
            f"sources={len(passages)}"
        )

        # ASGI servers need an async iterator to send frames as they are produced
        frames = stream.aevents() if isinstance(request, ASGIRequest) else stream.events()
        response = StreamingHttpResponse(frames, content_type='text/event-stream')
        response['Cache-Control'] = 'no-cache'
        response['X-Accel-Buffering'] = 'no'
        return response
