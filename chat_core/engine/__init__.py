"""会话引擎：历史维护与流式事件累积。"""

from chat_core.engine.accumulator import ResponseAccumulator
from chat_core.engine.conversation import Conversation

__all__ = ["Conversation", "ResponseAccumulator"]
