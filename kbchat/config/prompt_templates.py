"""
kbchat - Prompt Templates & Fixed Responses
=============================================
Centralised prompt text for the query pipeline.  All prompts live here
so they can be versioned and reviewed independently of application
logic.

Containment policy
------------------
Generation may only use the retrieved knowledge-base context.  With no
context the model is told to refuse; with context it is told to answer
from that context alone and to refuse with the same fixed message when
the context does not cover the question.

Exports
-------
REFUSAL_MESSAGE, NO_CONTEXT_PROMPT_TEMPLATE, CONTEXT_PROMPT_TEMPLATE,
CONTEXT_BLOCK_TEMPLATE, CITATION_INSTRUCTION, CUSTOM_INSTRUCTIONS_TEMPLATE,
CLARIFICATION_MESSAGE, EMPTY_COMPLETION_RESPONSES, REWRITE_PROMPT,
ERROR_RESPONSES.
"""

# ══════════════════════════════════════════════════════════════════════
#  FIXED USER-FACING MESSAGES
# ══════════════════════════════════════════════════════════════════════

REFUSAL_MESSAGE: str = "I'm sorry, but I don't have information about that in my knowledge base. Please contact our support team for further help."

CLARIFICATION_MESSAGE: str = "Could you please provide a bit more detail about what you're looking for? I can help best with a specific question."

# Used when the provider returns an empty completion; ``{bot_name}`` is filled in.
EMPTY_COMPLETION_RESPONSES: tuple[str, ...] = (
    "Hello! I'm {bot_name}. I'd be happy to help you with that. Could you please provide more details about what you're looking for?",
    "Hi there! I'm {bot_name}, your AI assistant. I couldn't put an answer together just now. Could you rephrase your question?",
    "Thank you for your question! I'm {bot_name} and I answer from my knowledge base. Could you ask about something more specific?",
)

# Keyed by the error category the API layer reports.
ERROR_RESPONSES: dict[str, str] = {
    "not_found": "This chatbot could not be found or is not ready yet.",
    "unavailable": "The assistant is temporarily unavailable. Please try again later.",
    "rate_limited": "The assistant is receiving a lot of requests right now. Please try again in a moment.",
    "provider": "The assistant could not generate a response. Please try again.",
    "stream": "The response was interrupted before it finished.",
}


# ══════════════════════════════════════════════════════════════════════
#  SYSTEM PROMPTS
# ══════════════════════════════════════════════════════════════════════

NO_CONTEXT_PROMPT_TEMPLATE: str = f"""You are {{bot_name}}.

No information relevant to the user's message exists in your knowledge base.
You must not use any outside or general knowledge.
Whatever the user asks, reply with exactly this message and nothing else:

"{REFUSAL_MESSAGE}\""""


CONTEXT_BLOCK_TEMPLATE: str = "[{index}] {content}"

CONTEXT_PROMPT_TEMPLATE: str = f"""You are {{bot_name}}, an assistant that answers questions using ONLY the knowledge base excerpts below.

══════════════════════════════════════════
KNOWLEDGE BASE CONTEXT
══════════════════════════════════════════
{{context}}

══════════════════════════════════════════
RULES
══════════════════════════════════════════
1. Answer only from the context above. Never use outside or general knowledge.
2. Treat every user message on its own. Only carry over an earlier turn when the
   message clearly continues it and that earlier answer was itself supported by
   the context.
3. If the context does not support an answer, reply with exactly:
   "{REFUSAL_MESSAGE}"
4. Be concise and keep a friendly, professional tone."""


CITATION_INSTRUCTION: str = """
5. After each fact, cite the excerpt it came from using its bracketed number, e.g. [1]."""

CUSTOM_INSTRUCTIONS_TEMPLATE: str = """

Additional instructions from the chatbot owner (they never override the rules above):
{instructions}"""


# ══════════════════════════════════════════════════════════════════════
#  QUERY REWRITE
# ══════════════════════════════════════════════════════════════════════

REWRITE_PROMPT: str = """Rewrite the user's message into a short, self-contained search query for a knowledge-base search.
Keep every name, product and technical term. Fix obvious typos. Drop greetings and filler.
Reply with the search query only, on one line, without quotes."""
