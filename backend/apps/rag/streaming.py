"""
Completion streaming for docs chat.

Relays model output to the client as Server-Sent Events:

    event: token     {"text": "..."}            one per upstream delta
    event: sources   {"sources": [...], "markdown": "..."}
    event: done      {}

Sources are only sent after the model finished. If the model stream breaks
off after text has been sent, a single ``error`` event closes the stream and
no sources follow.
"""
import json
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import AsyncIterator, Callable, Iterator, List, Optional, Sequence

from asgiref.sync import sync_to_async

from apps.rag.deadline import RequestDeadline
from apps.rag.errors import DeadlineExceeded, UpstreamUnavailable
from apps.rag.llm_client import BaseLLMClient, LLMError, get_llm_client
from apps.rag.prompts import ChatMessage
from apps.rag.retrieval import RetrievedPassage, format_sources_markdown

logger = logging.getLogger(__name__)

MID_STREAM_FAILURE = 'MID_STREAM_FAILURE'
INTERNAL_ERROR = 'INTERNAL_ERROR'


def sse_event(event: str, data: dict) -> str:
    """Format one Server-Sent Event frame."""
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


class CompletionStream:
    """
    A completion whose first delta has already arrived.

    Iterating ``events()`` (or ``aevents()`` under ASGI) yields SSE frames.
    Closing the iterator early (client went away) closes the upstream call
    as well.
    """

    def __init__(
        self,
        deltas: Iterator[str],
        first_delta: Optional[str],
        passages: Sequence[RetrievedPassage],
        on_complete: Optional[Callable[[int], None]] = None,
        on_failure: Optional[Callable[[str], None]] = None,
    ):
        self._deltas = deltas
        self._first_delta = first_delta
        self.passages = list(passages)
        self._on_complete = on_complete
        self._on_failure = on_failure
        self.delta_count = 0
        self.completed = False
        self.failed = False

    def close(self):
        self._deltas.close()

    def _text_deltas(self) -> Iterator[str]:
        if self._first_delta is not None:
            yield self._first_delta
        yield from self._deltas

    def _fail(self, code: str) -> str:
        self.failed = True
        if self._on_failure:
            self._on_failure(code)
        return sse_event('error', {
            'error': 'The answer was interrupted',
            'code': code,
        })

    def sources_payload(self) -> dict:
        return {
            'sources': [p.source_url for p in self.passages],
            'markdown': format_sources_markdown(self.passages),
        }

    def events(self) -> Iterator[str]:
        try:
            for delta in self._text_deltas():
                self.delta_count += 1
                yield sse_event('token', {'text': delta})
        except UpstreamUnavailable as e:
            logger.error(f"Completion stream failed after {self.delta_count} deltas: {e}")
            yield self._fail(MID_STREAM_FAILURE)
            return
        except Exception as e:
            logger.exception(f"Unexpected error while streaming completion: {e}")
            yield self._fail(INTERNAL_ERROR)
            return
        finally:
            self.close()

        yield sse_event('sources', self.sources_payload())
        yield sse_event('done', {})

        self.completed = True
        logger.info(
            f"Completion streamed: {self.delta_count} deltas, {len(self.passages)} sources"
        )
        if self._on_complete:
            self._on_complete(self.delta_count)

    async def aevents(self) -> AsyncIterator[str]:
        """
        ``events()`` for ASGI servers.

        Frames are pulled one at a time on a worker thread owned by this
        stream, so the upstream call is only read as fast as frames go out.
        Closing runs on the same thread, after any pull still in flight.
        """
        frames = self.events()
        worker = ThreadPoolExecutor(max_workers=1, thread_name_prefix="completion-stream")
        pull = sync_to_async(next, thread_sensitive=False, executor=worker)
        try:
            while True:
                frame = await pull(frames, None)
                if frame is None:
                    break
                yield frame
        finally:
            await sync_to_async(frames.close, thread_sensitive=False, executor=worker)()
            worker.shutdown(wait=False)


class CompletionStreamer:
    """Starts completions and hands back streams that are ready to relay."""

    def __init__(self, client: Optional[BaseLLMClient] = None):
        self._client = client

    @property
    def client(self) -> BaseLLMClient:
        if self._client is None:
            self._client = get_llm_client()
        return self._client

    def open(
        self,
        messages: List[ChatMessage],
        passages: Sequence[RetrievedPassage],
        deadline: RequestDeadline,
        on_complete: Optional[Callable[[int], None]] = None,
        on_failure: Optional[Callable[[str], None]] = None,
    ) -> CompletionStream:
        """
        Start the completion and wait for its first delta.

        Nothing has been sent to the client yet when this raises, so the
        caller can still answer with a plain error response.

        Raises:
            LLMError: The provider failed before producing output
            DeadlineExceeded: No output arrived before the request deadline
        """
        # Spent budgets fail here, before the provider is called
        deadline.remaining()
        deltas = self.client.stream_chat(
            [message.to_dict() for message in messages],
            deadline=deadline,
        )

        try:
            first_delta = next(deltas, None)
        except LLMError as e:
            deltas.close()
            if deadline.expired:
                raise DeadlineExceeded(
                    f"Completion did not start within {deadline.seconds:.0f}s"
                ) from e
            raise

        if deadline.expired:
            deltas.close()
            raise DeadlineExceeded(
                f"Completion did not start within {deadline.seconds:.0f}s"
            )

        return CompletionStream(
            deltas,
            first_delta,
            passages,
            on_complete=on_complete,
            on_failure=on_failure,
        )
