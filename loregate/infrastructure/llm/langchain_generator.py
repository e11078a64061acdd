from typing import Any, Dict, List, Optional
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
import structlog

from loregate.domain.generation.generator import GenerationRequest, GenerationResponse
from loregate.domain.models.usage import TokenUsage


LENGTH_STOP_REASONS = {"length", "max_tokens"}


class LangChainGenerator:
    """Adapts a langchain chat model to the TextGenerator protocol.

    With ``cache_prompt`` set and a static/dynamic split available, the
    static prefix goes in a system message and the suffix in a human message
    so providers with prefix caching can reuse it. Otherwise the whole prompt
    is a single human message.
    """

    def __init__(self, model: BaseChatModel, invoke_kwargs: Optional[Dict[str, Any]] = None, logger=None):
        if model is None:
            raise ValueError("model is required")

        self.model = model
        self.invoke_kwargs = invoke_kwargs or {}
        self.logger = logger or structlog.get_logger(__name__)

    async def generate(self, request: GenerationRequest) -> GenerationResponse:
        messages = self.build_messages(request)

        self.logger.debug(
            "Invoking chat model",
            model=type(self.model).__name__,
            attempt=request.attempt_number,
            message_count=len(messages)
        )

        message = await self.model.ainvoke(messages, **self.invoke_kwargs)

        return GenerationResponse(
            text=self._message_text(message),
            truncated=self._was_truncated(message),
            token_usage=self._token_usage(message)
        )

    @staticmethod
    def build_messages(request: GenerationRequest) -> List[BaseMessage]:
        if request.cache_prompt and request.static_prefix and request.dynamic_suffix is not None:
            return [SystemMessage(content=request.static_prefix), HumanMessage(content=request.dynamic_suffix)]
        return [HumanMessage(content=request.prompt)]

    @staticmethod
    def _message_text(message: Any) -> str:
        content = getattr(message, "content", message)
        if isinstance(content, str):
            return content

        # Content blocks
        parts = []
        for block in content or []:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and block.get("type") == "text":
                parts.append(block.get("text", ""))
        return "".join(parts)

    @staticmethod
    def _was_truncated(message: Any) -> bool:
        metadata = getattr(message, "response_metadata", None) or {}
        reason = metadata.get("finish_reason") or metadata.get("stop_reason")
        return reason in LENGTH_STOP_REASONS

    @staticmethod
    def _token_usage(message: Any) -> Optional[TokenUsage]:
        if not isinstance(message, AIMessage) or not message.usage_metadata:
            return None

        usage = message.usage_metadata
        return TokenUsage(
            prompt_tokens=usage.get("input_tokens", 0),
            completion_tokens=usage.get("output_tokens", 0)
        )
