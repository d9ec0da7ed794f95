import os
from typing import Optional, Tuple

from openai import OpenAI

from advisor.config import config

OPENAI_BASE_URL = "https://api.openai.com/v1"
GROQ_BASE_URL = "https://api.groq.com/openai/v1"


def resolve_client(
    api_key: Optional[str] = None,
    model: Optional[str] = None,
    openai_model: str = "gpt-4o",
    groq_model: str = "llama-3.3-70b-versatile",
) -> Tuple[OpenAI, str]:
    """
    Pick the provider from the key: OpenAI keys start with "sk-", anything
    else is sent to Groq's OpenAI-compatible endpoint.

    Returns:
        (client, model name)
    """
    resolved_key = api_key or config['openai_api_key'] or config['groq_api_key']
    if not resolved_key:
        raise ValueError("No API key provided. Set OPENAI_API_KEY or GROQ_API_KEY in your .env file.")

    if resolved_key.startswith("sk-"):
        base_url = OPENAI_BASE_URL
        chosen = model or config['model'] or os.environ.get("OPENAI_MODEL", openai_model)
    else:
        base_url = GROQ_BASE_URL
        chosen = model or config['model'] or os.environ.get("GROQ_MODEL", groq_model)

    return OpenAI(api_key=resolved_key, base_url=base_url), chosen
