"""模型引擎注册表。

集中登记已知的 chat 模型 id 及其上下文窗口大小。
未登记的 id 视为自定义引擎，原样透传给服务端，
这样接入新模型时不需要改动代码。"""

from dataclasses import dataclass
from typing import Mapping, Optional


@dataclass(frozen=True)
class EngineConfig:
    """单个引擎的配置。"""

    model_id: str
    context_window: Optional[int] = None

    @property
    def is_custom(self) -> bool:
        return self.model_id.lower() not in ENGINE_REGISTRY


ENGINE_REGISTRY: Mapping[str, EngineConfig] = {
    "gpt-3.5-turbo": EngineConfig("gpt-3.5-turbo", 4096),
    "gpt-3.5-turbo-0301": EngineConfig("gpt-3.5-turbo-0301", 4096),
    "gpt-4": EngineConfig("gpt-4", 8192),
    "gpt-4-32k": EngineConfig("gpt-4-32k", 32768),
    "gpt-4-0314": EngineConfig("gpt-4-0314", 8192),
    "gpt-4-32k-0314": EngineConfig("gpt-4-32k-0314", 32768),
}


def resolve_engine(name: str) -> EngineConfig:
    """根据名称获取 EngineConfig，名称不区分大小写。"""

    key = (name or "").strip()
    if not key:
        raise ValueError("Engine name must not be empty")
    known = ENGINE_REGISTRY.get(key.lower())
    if known is not None:
        return known
    return EngineConfig(model_id=key)
