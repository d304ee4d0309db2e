"""chat/completions API 集成层。

该包下的模块负责：
- 定义传输层抽象接口 (base)。
- 基于 httpx 的传输实现 (http_transport)。
- SSE 流式响应解码 (decoder)。
- 组装请求并解析响应的客户端 (chatgpt_client)。
- 已知模型引擎登记 (registry)。
"""
