"""
Prompt construction for docs chat.

Builds the message list sent to the completion model. The order is fixed:
persona, prior turns, retrieved context, then the new question, so the
documentation is the last thing the model reads before answering.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Sequence

from apps.rag.retrieval import RetrievedPassage


class Role(str, Enum):
    """Chat roles understood by the completion providers."""
    SYSTEM = 'system'
    USER = 'user'
    ASSISTANT = 'assistant'

    @classmethod
    def for_history(cls, value) -> 'Role':
        """
        Map a client-supplied role onto the roles forwarded as history.

        Only ``user`` stays a user turn. Everything else, including
        ``system`` and unknown values, is forwarded as ``assistant``. This
        mirrors current behaviour; it is not a recommendation.
        """
        if isinstance(value, str) and value.strip().lower() == cls.USER.value:
            return cls.USER
        return cls.ASSISTANT


@dataclass
class ChatMessage:
    """One message of the assembled prompt."""
    role: Role
    content: str

    def to_dict(self) -> dict:
        return {"role": self.role.value, "content": self.content}


# Persona and behaviour rules for the docs assistant
SYSTEM_PROMPT = """
Context:
You are Vue.js Docs GPT, a chatbot that knows up-to-date information about VueJS.
You explain things in an enjoyable and detailed way.
Your task is to create simple, easy to understand explanations of VueJS concepts.
You are good at pedagogy and know how to explain complex things simply.
You are a senior VueJS developer and know the framework inside out.

Goal:
Answer the user's question about VueJS.

Criteria:
To answer the question you are given a context taken from the VueJS documentation.
Use this context to write your answer.
If the user asks a question that is not related to VueJS, respond with "I'm sorry, I can only answer questions about VueJS".

Response format:
* short
* to the point
* with examples
* with metaphors
* using markdown
* space separated
"""

REFUSAL_MESSAGE = "I'm sorry, I can only answer questions about VueJS"

CONTEXT_PREFIX = "Context: "


def build_context_block(passages: Sequence[RetrievedPassage]) -> str:
    """
    Render retrieved passages for the context message.

    Format:
    https://vuejs.org/guide/reactivity: The text content here...

    https://vuejs.org/api/computed: More content...
    """
    return "\n\n".join(f"{p.source_url}: {p.text}" for p in passages)


def coerce_history(history: Iterable[dict]) -> List[ChatMessage]:
    """Turn client history entries into user/assistant messages, order kept."""
    return [
        ChatMessage(
            role=Role.for_history(turn.get("role")),
            content=str(turn.get("content", "")),
        )
        for turn in history
    ]


def assemble_messages(
    system_instructions: str,
    history: Iterable[dict],
    passages: Sequence[RetrievedPassage],
    user_query: str,
) -> List[ChatMessage]:
    """
    Assemble the final prompt.

    Returns:
        [system(instructions), *history, system(context), user(query)]
    """
    return [
        ChatMessage(role=Role.SYSTEM, content=system_instructions),
        *coerce_history(history),
        ChatMessage(role=Role.SYSTEM, content=CONTEXT_PREFIX + build_context_block(passages)),
        ChatMessage(role=Role.USER, content=user_query),
    ]


def build_prompt(conversation: Sequence[dict], passages: Sequence[RetrievedPassage]) -> List[ChatMessage]:
    """
    Build the prompt for a client conversation.

    The newest entry is the question; everything before it is history.
    """
    *history, newest = conversation
    return assemble_messages(
        system_instructions=SYSTEM_PROMPT,
        history=history,
        passages=passages,
        user_query=str(newest.get("content", "")),
    )
