"""Prompt assembly: system directive, prior history and the new user turn."""

from __future__ import annotations

from typing import Dict, Iterable, List, Mapping

from .errors import ValidationError

DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant. Be concise and clear."

SYSTEM_PROMPTS: Mapping[str, str] = {
    "deepseek-r1:7b": (
        "You are a reasoning-focused assistant.\n"
        "Explain concepts clearly and accurately.\n"
        "Use proper paragraphs and bullet points when helpful.\n"
        "Do NOT repeat words or phrases.\n"
        "Do NOT expose chain-of-thought or internal reasoning.\n"
        "Present conclusions cleanly and concisely."
    ),
    "llama3.1:8b": (
        "You are a fast, concise assistant.\n"
        "Answer clearly and directly.\n"
        "Keep responses short unless more detail is requested.\n"
        "Avoid repetition.\n"
        "Use bullet points only when helpful."
    ),
}


def system_prompt_for(model: str) -> str:
    return SYSTEM_PROMPTS.get(model, DEFAULT_SYSTEM_PROMPT)


def build_prompt(
    model: str,
    history: Iterable[Mapping[str, str]],
    message: str,
) -> List[Dict[str, str]]:
    """Return the ordered message list sent upstream for one chat turn.

    ``history`` must already exclude the turn being sent; it is copied
    verbatim (oldest first) between the system entry and ``message``.
    """
    if not isinstance(model, str) or not model.strip():
        raise ValidationError(code="INVALID_MODEL", message="Model must be a non-empty string")

    prompt: List[Dict[str, str]] = [{"role": "system", "content": system_prompt_for(model)}]
    prompt.extend({"role": entry["role"], "content": entry["content"]} for entry in history)
    prompt.append({"role": "user", "content": message})
    return prompt
