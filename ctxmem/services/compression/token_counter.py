"""Token counter for precise token counting."""

import tiktoken


class TokenCounter:
    """Precise token counter using tiktoken.

    The same instance counts both sides of a compression so ratios stay
    comparable across strategies.
    """

    def __init__(self, encoding_name: str = "cl100k_base"):
        """Initialize token counter.

        Args:
            encoding_name: The encoding to use (default: cl100k_base)
        """
        self.encoding_name = encoding_name
        self.encoding = tiktoken.get_encoding(encoding_name)

    def count_text(self, text: str) -> int:
        """Count tokens in a text string.

        Args:
            text: Text to count

        Returns:
            Token count
        """
        if not text:
            return 0
        return len(self.encoding.encode(text, disallowed_special=()))

    def count_messages(self, messages: list[dict]) -> int:
        """Count tokens in chat messages rendered as ``role: content`` lines."""
        return self.count_text(render_messages(messages))


def render_messages(messages: list[dict]) -> str:
    """Render chat messages into the plain-text form that gets compressed."""
    return "\n".join(
        f"{msg.get('role', 'user')}: {msg.get('content', '')}"
        for msg in messages
    )
