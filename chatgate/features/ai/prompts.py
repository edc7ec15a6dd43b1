"""Prompt templates for the chat assistant."""

from typing import Optional

BASE_PROMPT = (
    "You are a helpful, precise assistant. Answer in Markdown when structure helps "
    "(lists, code blocks, tables) and keep a friendly, direct tone."
)

LENGTH_PROMPT = (
    "Your whole reply must fit in {limit} characters, including spaces and Markdown. "
    "Prefer a complete short answer over a long one that gets cut off."
)

LANGUAGE_PROMPT = "Always reply in {language}."

TERMINAL_DIRECTIVE = "(Reply in at most {limit} characters.)"

CORRECTIVE_DIRECTIVE = (
    "(Your previous reply was {measured} characters, {overflow} over the hard limit "
    "of {limit}. Rewrite it to at most {limit} characters.)"
)


def system_instruction(max_response_length: int, language: Optional[str] = None) -> str:
    parts = [BASE_PROMPT]
    if max_response_length > 0:
        parts.append(LENGTH_PROMPT.format(limit=max_response_length))
    if language:
        parts.append(LANGUAGE_PROMPT.format(language=language))
    return "\n\n".join(parts)


def terminal_directive(max_response_length: int) -> str:
    if max_response_length <= 0:
        return ""
    return TERMINAL_DIRECTIVE.format(limit=max_response_length)


def corrective_directive(measured: int, limit: int) -> str:
    return CORRECTIVE_DIRECTIVE.format(measured=measured, overflow=measured - limit, limit=limit)
