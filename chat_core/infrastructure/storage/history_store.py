"""会话历史的持久化。

两种可互换的编码，表示同一个有序消息序列：

- JSON：人类可读，list[{role, content, function_call?}]。
- 二进制：紧凑格式，布局如下（整数均为 LEB128 varint）::

      b"CHH" | version:u8 | count | message*
      message  = role:u8 | content | flag:u8 | [name | arguments]
      string   = length | utf-8 bytes

读取时文件不存在或内容损坏一律抛 ParsingError。
"""

import json
import os
import struct
from pathlib import Path
from typing import Any, Dict, List, Sequence, Tuple, Union
from uuid import uuid4

from chat_core.config.settings import settings
from chat_core.domain.exceptions import ChatError, ParsingError
from chat_core.domain.models import ROLES, ChatMessage, FunctionCall


BINARY_MAGIC = b"CHH"
BINARY_VERSION = 1
_HEADER = struct.Struct(">3sB")

PathLike = Union[str, Path]


# ---- JSON ----

def _message_to_dict(message: ChatMessage) -> Dict[str, Any]:
    obj: Dict[str, Any] = {"role": message.role, "content": message.content}
    if message.function_call is not None:
        obj["function_call"] = {
            "name": message.function_call.name,
            "arguments": message.function_call.arguments,
        }
    return obj


def encode_history_json(history: Sequence[ChatMessage]) -> str:
    return json.dumps([_message_to_dict(m) for m in history], ensure_ascii=False, indent=2)


def decode_history_json(text: str) -> List[ChatMessage]:
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ParsingError(f"Conversation history JSON is malformed: {exc}")
    if not isinstance(data, list):
        raise ParsingError("Conversation history JSON must be a list of messages")
    return [ChatMessage.from_payload(item) for item in data]


# ---- 二进制 ----

def _write_varint(out: bytearray, value: int) -> None:
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return


def _write_str(out: bytearray, text: str) -> None:
    raw = text.encode("utf-8")
    _write_varint(out, len(raw))
    out.extend(raw)


def encode_history_binary(history: Sequence[ChatMessage]) -> bytes:
    out = bytearray(_HEADER.pack(BINARY_MAGIC, BINARY_VERSION))
    _write_varint(out, len(history))
    for message in history:
        out.append(ROLES.index(message.role))
        _write_str(out, message.content)
        if message.function_call is None:
            out.append(0)
        else:
            out.append(1)
            _write_str(out, message.function_call.name)
            _write_str(out, message.function_call.arguments)
    return bytes(out)


class _Reader:
    """按顺序读取二进制历史，越界即 ParsingError。"""

    def __init__(self, data: bytes, offset: int = 0):
        self._data = data
        self._pos = offset

    @property
    def exhausted(self) -> bool:
        return self._pos >= len(self._data)

    def byte(self) -> int:
        if self._pos >= len(self._data):
            raise ParsingError("Conversation history binary data is truncated")
        value = self._data[self._pos]
        self._pos += 1
        return value

    def varint(self) -> int:
        result = 0
        shift = 0
        while True:
            byte = self.byte()
            result |= (byte & 0x7F) << shift
            if not byte & 0x80:
                return result
            shift += 7
            if shift > 63:
                raise ParsingError("Varint in conversation history is too long")

    def string(self) -> str:
        length = self.varint()
        end = self._pos + length
        if end > len(self._data):
            raise ParsingError("Conversation history binary data is truncated")
        raw = self._data[self._pos:end]
        self._pos = end
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ParsingError(f"Invalid UTF-8 in conversation history: {exc}")


def decode_history_binary(data: bytes) -> List[ChatMessage]:
    if len(data) < _HEADER.size:
        raise ParsingError("Conversation history binary data is truncated")
    magic, version = _HEADER.unpack_from(data)
    if magic != BINARY_MAGIC:
        raise ParsingError("Not a conversation history binary file")
    if version != BINARY_VERSION:
        raise ParsingError(f"Unsupported conversation history version: {version}")

    reader = _Reader(data, _HEADER.size)
    count = reader.varint()
    history: List[ChatMessage] = []
    for _ in range(count):
        role_idx = reader.byte()
        if role_idx >= len(ROLES):
            raise ParsingError(f"Unknown role tag in conversation history: {role_idx}")
        content = reader.string()
        flag = reader.byte()
        if flag == 0:
            function_call = None
        elif flag == 1:
            name = reader.string()
            function_call = FunctionCall(name=name, arguments=reader.string())
        else:
            raise ParsingError(f"Invalid function-call flag in conversation history: {flag}")
        history.append(ChatMessage(role=ROLES[role_idx], content=content, function_call=function_call))  # type: ignore[arg-type]
    if not reader.exhausted:
        raise ParsingError("Trailing bytes after conversation history")
    return history


# ---- 文件存储 ----

class HistoryStore:
    """把历史写到 storage_root 下（绝对路径则原样使用）。

    写入先落临时文件再 os.replace，避免半截文件。
    """

    def __init__(self, root: Union[PathLike, None] = None):
        self._root = Path(root or settings.storage_root).resolve()

    def resolve(self, path: PathLike) -> Path:
        p = Path(path).expanduser()
        return p if p.is_absolute() else self._root / p

    def save_json(self, path: PathLike, history: Sequence[ChatMessage]) -> Path:
        return self._write(path, encode_history_json(history).encode("utf-8"))

    def save_binary(self, path: PathLike, history: Sequence[ChatMessage]) -> Path:
        return self._write(path, encode_history_binary(history))

    def load_json(self, path: PathLike) -> List[ChatMessage]:
        target, raw = self._read(path, "JSON")
        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ParsingError(f"Conversation history JSON file {target} is not UTF-8: {exc}")
        return decode_history_json(text)

    def load_binary(self, path: PathLike) -> List[ChatMessage]:
        _, raw = self._read(path, "binary")
        return decode_history_binary(raw)

    def _read(self, path: PathLike, kind: str) -> Tuple[Path, bytes]:
        target = self.resolve(path)
        if not target.is_file():
            raise ParsingError(f"Conversation history {kind} file does not exist: {target}")
        try:
            return target, target.read_bytes()
        except OSError as e:
            raise ParsingError(f"Failed to read conversation history {target}: {e}")

    def _write(self, path: PathLike, data: bytes) -> Path:
        target = self.resolve(path)
        tmp_path = target.with_name(f"{target.name}.{uuid4().hex}.tmp")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_bytes(data)
            os.replace(tmp_path, target)
        except OSError as e:
            raise ChatError(code="STORE_WRITE_ERROR", message=str(e))
        return target
