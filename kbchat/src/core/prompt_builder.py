"""
kbchat - Prompt Builder
========================
Trivial-query short-circuit and system-prompt assembly under the
containment policy (see ``kbchat.config.prompt_templates``).
"""

from __future__ import annotations

from collections.abc import Sequence

from kbchat.config.prompt_templates import CITATION_INSTRUCTION, CONTEXT_BLOCK_TEMPLATE, CONTEXT_PROMPT_TEMPLATE, CUSTOM_INSTRUCTIONS_TEMPLATE, NO_CONTEXT_PROMPT_TEMPLATE
from kbchat.src.core.models import RAGConfig, RetrievedChunk
from kbchat.src.utils.logger import get_logger
from kbchat.src.utils.text_utils import truncate

logger = get_logger(__name__)


def is_trivial_query(message: str, config: RAGConfig) -> bool:
    """
    True when *message* is too short or is a bare stopword.

    A message is trivial if its word count is at most
    ``config.min_word_count`` or its trimmed, lowercased form exactly
    matches one of ``config.stopwords``.
    """
    normalised = message.strip().lower()
    if len(normalised.split()) <= config.min_word_count:
        return True
    return normalised in {w.strip().lower() for w in config.stopwords}


def format_context(chunks: Sequence[RetrievedChunk], chunk_char_limit: int) -> str:
    """Render chunks as numbered ``[i] content`` blocks, each cut to the limit."""
    blocks = [CONTEXT_BLOCK_TEMPLATE.format(index=i, content=truncate(c.content.strip(), chunk_char_limit)) for i, c in enumerate(chunks, start=1)]
    return "\n\n".join(blocks)


def build_prompt(bot_name: str, context: Sequence[RetrievedChunk], citations_enabled: bool, chunk_char_limit: int, custom_instructions: str | None = None) -> str:
    """
    Assemble the system prompt.

    With no context the prompt only instructs refusal; citation and
    owner instructions are deliberately left out of it.
    """
    if not context:
        logger.debug("[PROMPT] No context — refusal-only prompt.")
        return NO_CONTEXT_PROMPT_TEMPLATE.format(bot_name=bot_name)

    prompt = CONTEXT_PROMPT_TEMPLATE.format(bot_name=bot_name, context=format_context(context, chunk_char_limit))
    if citations_enabled:
        prompt += CITATION_INSTRUCTION
    if custom_instructions and custom_instructions.strip():
        prompt += CUSTOM_INSTRUCTIONS_TEMPLATE.format(instructions=custom_instructions.strip())

    logger.debug("[PROMPT] %d context block(s), citations=%s, %d chars.", len(context), citations_enabled, len(prompt))
    return prompt
