"""会话与消息的存储模型，以及持久化协议。

Message 在客户端与服务端之间共用同一个 schema，并在边界处用 pydantic 校验，
不再允许各处自行拼装形状各异的 dict。
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from .models import Role


def new_message_id() -> str:
    return f"m-{uuid4().hex}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Conversation:
    id: str
    title: str
    user_id: Optional[str]
    created_at: datetime


class Message(BaseModel):
    """一条会话消息。

    持久化后即不可变；进行中的 assistant 消息在本轮结束前会不断追加 content。
    incomplete 为 True 表示该消息来自失败或被取消的一轮，内容可能不完整。
    """

    id: str = Field(default_factory=new_message_id)
    role: Role
    content: str = ""
    conversation_id: str
    created_at: datetime = Field(default_factory=utcnow)
    incomplete: bool = False

    @field_validator("conversation_id")
    @classmethod
    def _conversation_id_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("conversation_id must not be blank")
        return v

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "Message":
        """从外部传入的 dict 构造并校验消息（camelCase 字段同样接受）。"""

        data = dict(payload)
        if "conversationId" in data and "conversation_id" not in data:
            data["conversation_id"] = data.pop("conversationId")
        if "createdAt" in data and "created_at" not in data:
            data["created_at"] = data.pop("createdAt")
        return cls.model_validate(data)


class ConversationStore(Protocol):
    """持久化协作方。

    create_message / create_messages 返回时写入必须已落盘，create_messages 的
    多条记录要么一起写入要么都不写；get_messages_by_conversation
    按插入顺序返回。
    """

    def create_conversation(self, title: str, user_id: Optional[str] = None) -> Conversation:
        ...

    def get_conversation(self, conversation_id: str) -> Conversation:
        ...

    def list_conversations(self) -> List[Conversation]:
        ...

    def create_message(self, content: str, role: Role, conversation_id: str) -> Message:
        ...

    def create_messages(self, conversation_id: str, items: Sequence[Tuple[str, Role]]) -> List[Message]:
        ...

    def get_messages_by_conversation(self, conversation_id: str) -> List[Message]:
        ...

    def update_conversation_title(self, conversation_id: str, title: str) -> None:
        ...

    def delete_conversation(self, conversation_id: str) -> None:
        ...
