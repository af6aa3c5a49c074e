"""首轮指令注入。

部分模型（例如 MedGemma 系列）不接受独立的 system 角色。
对这些模型，会话的第一轮把人设指令、健康上下文和用户问题
拼成一条带 INSTRUCTIONS / CONTEXT / QUESTION 分段标记的消息，
并且不再通过侧通道单独发送上下文。之后的轮次照常发送。
"""

from dataclasses import dataclass
from typing import Iterable, List, Optional

from chat_core.domain.conversation import Conversation

DEFAULT_PATTERNS = ("medgemma",)


@dataclass
class ShapedRequest:
    """交给 Provider 的最终请求形态。"""

    body: str
    context: str
    system_prompt: Optional[str]
    injected: bool


def is_first_turn(conversation: Conversation) -> bool:
    """恰好一条用户消息且没有助手消息。

    必须在追加流式占位消息之前调用，否则计数会偏一。
    """
    return conversation.user_message_count == 1 and conversation.assistant_message_count == 0


class InstructionFormatter:
    """维护需要注入指令的模型名模式（精确或前缀匹配，不区分大小写）。"""

    def __init__(self, patterns: Optional[Iterable[str]] = None):
        self._defaults = tuple(p.strip().lower() for p in (patterns if patterns is not None else DEFAULT_PATTERNS))
        self._patterns: List[str] = list(dict.fromkeys(p for p in self._defaults if p))

    def patterns(self) -> List[str]:
        return list(self._patterns)

    def add_pattern(self, pattern: str) -> None:
        key = pattern.strip().lower()
        if key and key not in self._patterns:
            self._patterns.append(key)

    def remove_pattern(self, pattern: str) -> None:
        key = pattern.strip().lower()
        self._patterns = [p for p in self._patterns if p != key]

    def has_pattern(self, pattern: str) -> bool:
        return pattern.strip().lower() in self._patterns

    def reset_to_defaults(self) -> None:
        self._patterns = list(dict.fromkeys(p for p in self._defaults if p))

    def requires_injection(self, model: Optional[str]) -> bool:
        if not model:
            return False
        name = model.strip().lower()
        candidates = {name, name.rsplit("/", 1)[-1]}
        return any(c == p or c.startswith(p) for c in candidates for p in self._patterns)

    @staticmethod
    def format_first_message(user_message: str, system_prompt: Optional[str], context: Optional[str]) -> str:
        out = ""
        if system_prompt and system_prompt.strip():
            out += f"INSTRUCTIONS:\n{system_prompt.strip()}\n\n"
        if context and context.strip():
            out += f"CONTEXT:\n{context.strip()}\n\n"
        out += f"QUESTION:\n{user_message}"
        return out

    def shape_request(
        self,
        model: Optional[str],
        user_message: str,
        system_prompt: Optional[str],
        context: str,
        first_turn: bool,
    ) -> ShapedRequest:
        if first_turn and self.requires_injection(model):
            body = self.format_first_message(user_message, system_prompt, context)
            return ShapedRequest(body=body, context="", system_prompt=None, injected=True)
        return ShapedRequest(body=user_message, context=context, system_prompt=system_prompt, injected=False)
