from .client import (
    LLMError,
    chat_completion,
    embed_texts,
    parse_json_content,
    with_backoff,
)

__all__ = ["LLMError", "chat_completion", "embed_texts", "parse_json_content", "with_backoff"]
