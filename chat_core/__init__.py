"""chat_core 顶层包。

该包提供 chat/completions API 的异步客户端，
包括配置加载、领域模型、SSE 流式解码、会话引擎、
函数调用以及历史持久化等能力。
"""

from chat_core.config.model_config import ModelConfiguration
from chat_core.engine import Conversation, ResponseAccumulator
from chat_core.providers.chatgpt_client import ChatGPT

__all__ = ["ChatGPT", "Conversation", "ModelConfiguration", "ResponseAccumulator"]
