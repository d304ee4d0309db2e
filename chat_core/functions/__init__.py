"""函数调用支持：函数描述、执行结果与注册表。"""

from chat_core.functions.definitions import FunctionDescriptor, FunctionResult
from chat_core.functions.executor import FunctionHandler, FunctionRegistry

__all__ = ["FunctionDescriptor", "FunctionResult", "FunctionHandler", "FunctionRegistry"]
