"""领域层模型与异常。

包含：
- models: ChatMessage / CompletionRequest / CompletionResponse 等模型。
- events: 流式响应事件（BeginResponse / Content / CloseResponse / Done / StreamError）。
- exceptions: 业务异常类型定义。
"""
