from typing import Tuple

import tiktoken

from advisor.config import config


class TokenBudget:
    def __init__(self, encoding_name: str = None):
        """
        Token counting for prompts sent to the language model.

        Args:
            encoding_name: tiktoken encoding. Default comes from config
                           ('cl100k_base', used by GPT-4 class models).
        """
        self.tokenizer = tiktoken.get_encoding(encoding_name or config['encoding'])

    def truncate(self, text: str, max_tokens: int) -> Tuple[str, bool]:
        """
        Cut text down to at most `max_tokens` tokens.

        Returns:
            (text, was_truncated)
        """
        tokens = self.tokenizer.encode(text)
        if len(tokens) <= max_tokens:
            return text, False
        return self.tokenizer.decode(tokens[:max_tokens]), True
