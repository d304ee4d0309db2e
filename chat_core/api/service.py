"""对外 API 服务模块。

提供简化的函数接口供上层应用调用。
"""

import logging
from typing import Optional

from chat_core.config.settings import settings
from chat_core.infrastructure.logging.logger import log_event
from chat_core.providers.chatgpt_client import ChatGPT


_client: Optional[ChatGPT] = None


def get_default_client() -> ChatGPT:
    """获取按 settings 构造的默认客户端（单例）。"""
    global _client
    if _client is None:
        _client = ChatGPT(settings.openai_api_key)
    return _client


def reset_default_client() -> None:
    """丢弃缓存的默认客户端，下次调用时按当前 settings 重建。"""
    global _client
    _client = None


async def ask(message: str, direction_message: Optional[str] = None) -> str:
    """在一个临时会话里问一个问题，返回回复文本。

    Args:
        message: 用户问题
        direction_message: 可选的 system 消息，缺省使用 settings.default_direction_message

    Returns:
        第一条候选回答的内容

    Raises:
        各种 domain.exceptions 中定义的异常
    """
    client = get_default_client()
    if direction_message:
        conversation = client.new_conversation_directed(direction_message)
    else:
        conversation = client.new_conversation()
    try:
        response = await conversation.send(message)
    except Exception:
        log_event(logging.ERROR, "ask failed", message_chars=len(message))
        raise
    return response.message().content
