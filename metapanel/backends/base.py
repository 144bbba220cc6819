"""Abstract base for chat completion backends."""

from abc import ABC, abstractmethod

from metapanel.models import ChatRequest, ChatResult

FALLBACK_TEXT = "(Offline fallback) Here is a concise perspective based on my persona."


class BackendError(Exception):
    """Raised when a chat backend call fails."""

    def __init__(self, backend_name: str, message: str) -> None:
        self.backend_name = backend_name
        super().__init__(f"[{backend_name}] {message}")


class ChatBackend(ABC):
    """Abstract base for all chat backends."""

    @abstractmethod
    def name(self) -> str:
        """Return the short backend name (e.g. 'ollama')."""
        ...

    @abstractmethod
    async def complete(self, request: ChatRequest) -> ChatResult:
        """Run one chat completion.

        Args:
            request: Model id and ordered message list.

        Returns:
            ChatResult. On any failure the result carries FALLBACK_TEXT with
            fallback=True; this method never raises.
        """
        ...

    async def aclose(self) -> None:
        """Release network resources. Default is a no-op."""
