"""基于 httpx 的传输实现。

- 认证: Authorization: Bearer <api_key>
- 非流式: POST JSON，返回状态码与解码后的 JSON。
- 流式: POST JSON，逐块透传原始字节，不做任何切分，切分交给 ResponseDecoder。

超时、代理只在这一层生效；重试与退避不在本项目范围内。
"""

import logging
from typing import Any, AsyncIterator, Dict, Optional, Tuple

import httpx

from chat_core.domain.exceptions import ParsingError, TransportError, ValidationError
from chat_core.infrastructure.logging.logger import log_event


class HttpTransport:
    """httpx.AsyncClient 传输实现。

    每次调用新建一个 AsyncClient 并在 async with 中关闭，
    流式调用中途被取消时连接也会随上下文一起释放。
    """

    def __init__(self, api_key: Optional[str], timeout: float = 10.0, proxy: Optional[str] = None):
        if not api_key:
            # 配置缺失走 ValidationError，方便上层统一处理
            raise ValidationError(code="MISSING_API_KEY", message="OPENAI_API_KEY not set")
        self._api_key = api_key
        self._timeout = timeout
        self._proxy = proxy

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

    def _client(self) -> httpx.AsyncClient:
        kwargs: Dict[str, Any] = {"timeout": self._timeout, "trust_env": False}
        if self._proxy:
            kwargs["proxy"] = self._proxy
        return httpx.AsyncClient(**kwargs)

    async def post_json(self, url: str, payload: Dict[str, Any]) -> Tuple[int, Any]:
        try:
            async with self._client() as client:
                resp = await client.post(url, json=payload, headers=self._headers())
        except httpx.RequestError as e:
            # 网络错误：DNS 失败、连接超时等
            raise TransportError(str(e) or type(e).__name__)
        try:
            data = resp.json()
        except ValueError:
            raise ParsingError(
                f"Response body is not valid JSON (HTTP {resp.status_code})",
                http_status=resp.status_code,
            )
        return resp.status_code, data

    async def stream(self, url: str, payload: Dict[str, Any]) -> AsyncIterator[bytes]:
        try:
            async with self._client() as client:
                async with client.stream("POST", url, json=payload, headers=self._headers()) as resp:
                    if resp.status_code >= 400:
                        # 服务端拒绝时流为空，只记录日志
                        body = await resp.aread()
                        log_event(
                            logging.WARNING,
                            "Streaming request rejected",
                            http_status=resp.status_code,
                            body=body[:200].decode("utf-8", errors="replace"),
                        )
                        return
                    async for chunk in resp.aiter_bytes():
                        yield chunk
        except (httpx.RequestError, httpx.StreamError) as e:
            raise TransportError(str(e) or type(e).__name__)
