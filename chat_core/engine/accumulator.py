"""流式事件累加器。

请求 n > 1 时，多个候选回答的增量会交错到达。
ResponseAccumulator 按 response_index 分别累积，最终还原出每个候选的完整消息。
"""

from dataclasses import dataclass, field
from typing import AsyncIterable, Dict, List

from chat_core.domain.events import (
    BeginResponse,
    CloseResponse,
    Content,
    Done,
    ResponseEvent,
    StreamError,
)
from chat_core.domain.exceptions import ChatError
from chat_core.domain.models import ChatMessage, Role


@dataclass
class _Candidate:
    role: Role = "assistant"
    parts: List[str] = field(default_factory=list)
    closed: bool = False


class ResponseAccumulator:
    def __init__(self) -> None:
        self._candidates: Dict[int, _Candidate] = {}
        self.done = False
        self.errors: List[ChatError] = []

    def apply(self, event: ResponseEvent) -> None:
        if isinstance(event, BeginResponse):
            self._candidate(event.response_index).role = event.role
        elif isinstance(event, Content):
            self._candidate(event.response_index).parts.append(event.delta)
        elif isinstance(event, CloseResponse):
            self._candidate(event.response_index).closed = True
        elif isinstance(event, Done):
            self.done = True
        elif isinstance(event, StreamError):
            self.errors.append(event.error)

    @property
    def failed(self) -> bool:
        return bool(self.errors)

    def indices(self) -> List[int]:
        return sorted(self._candidates)

    def text(self, index: int = 0) -> str:
        candidate = self._candidates.get(index)
        return "".join(candidate.parts) if candidate else ""

    def is_closed(self, index: int = 0) -> bool:
        candidate = self._candidates.get(index)
        return bool(candidate and candidate.closed)

    def message(self, index: int = 0) -> ChatMessage:
        candidate = self._candidates.get(index) or _Candidate()
        return ChatMessage(role=candidate.role, content="".join(candidate.parts))

    def messages(self) -> List[ChatMessage]:
        return [self.message(i) for i in self.indices()]

    @classmethod
    async def collect(cls, events: AsyncIterable[ResponseEvent]) -> "ResponseAccumulator":
        """消费整个事件序列并返回累加结果。"""

        acc = cls()
        async for event in events:
            acc.apply(event)
        return acc
