"""模型参数配置。

ModelConfiguration 是一个不可变的值对象：客户端持有一份，
每次构造请求时按引用读取，不存在全局可变状态。
"""

from dataclasses import dataclass, replace
from typing import Optional

from chat_core.config.settings import DEFAULT_API_URL, Settings
from chat_core.providers.registry import resolve_engine


@dataclass(frozen=True)
class ModelConfiguration:
    """单个客户端的模型与请求参数。

    - engine: 模型 id（已知引擎或自定义 id）。
    - temperature / top_p: 采样参数。
    - max_tokens: 回复最大 token 数，None 表示由服务端决定。
    - presence_penalty / frequency_penalty: 重复惩罚。
    - reply_count: 并行候选数，对应请求中的 n。
    - api_url: chat/completions 端点。
    - timeout: HTTP 超时（秒），仅传给传输层。
    """

    engine: str = "gpt-3.5-turbo"
    temperature: float = 0.5
    top_p: float = 1.0
    max_tokens: Optional[int] = None
    presence_penalty: float = 0.0
    frequency_penalty: float = 0.0
    reply_count: int = 1
    api_url: str = DEFAULT_API_URL
    timeout: float = 10.0

    def __post_init__(self) -> None:
        if self.reply_count < 1:
            raise ValueError("reply_count must be >= 1")
        if self.max_tokens is not None and self.max_tokens < 1:
            raise ValueError("max_tokens must be >= 1")

    @classmethod
    def from_settings(cls, settings: Settings) -> "ModelConfiguration":
        return cls(
            engine=resolve_engine(settings.default_engine).model_id,
            temperature=settings.temperature,
            top_p=settings.top_p,
            max_tokens=settings.max_tokens,
            presence_penalty=settings.presence_penalty,
            frequency_penalty=settings.frequency_penalty,
            reply_count=settings.reply_count,
            api_url=settings.api_url,
            timeout=settings.http_timeout,
        )

    def with_engine(self, engine: str) -> "ModelConfiguration":
        """返回仅替换 engine 的新配置。"""

        return replace(self, engine=resolve_engine(engine).model_id)
