import json
import os
import shutil
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple
from uuid import uuid4

from pydantic import ValidationError as SchemaError

from somm_core.config.settings import settings
from somm_core.domain.conversation import Conversation, ConversationStore, Message
from somm_core.domain.exceptions import BusinessError
from somm_core.domain.models import Role


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_dt(raw: str) -> datetime:
    return datetime.fromisoformat(str(raw).replace("Z", "+00:00"))


class JsonConversationStore(ConversationStore):
    """每个会话一个目录：meta.json（原子替换）+ messages.jsonl（只追加）。"""

    def __init__(self, root: str | Path | None = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._conv_root = self._root / "conversations"
        self._conv_root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def create_conversation(self, title: str, user_id: Optional[str] = None) -> Conversation:
        cid = f"c-{uuid4().hex}"
        cdir = self._conv_root / cid
        cdir.mkdir(parents=True, exist_ok=True)
        conv = Conversation(id=cid, title=title, user_id=user_id, created_at=datetime.now(timezone.utc))
        self._write_meta(cdir, conv)
        return conv

    def get_conversation(self, conversation_id: str) -> Conversation:
        meta_path = self._conv_root / conversation_id / "meta.json"
        if not meta_path.exists():
            raise BusinessError(code="CONVERSATION_NOT_FOUND", message=conversation_id, http_status=404)
        try:
            data = json.loads(meta_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise BusinessError(code="STORE_READ_ERROR", message=str(e), http_status=500)
        return self._to_conversation(data)

    def list_conversations(self) -> List[Conversation]:
        items: List[Conversation] = []
        for cdir in sorted(p for p in self._conv_root.iterdir() if p.is_dir()):
            meta_path = cdir / "meta.json"
            if not meta_path.exists():
                continue
            try:
                items.append(self._to_conversation(json.loads(meta_path.read_text(encoding="utf-8"))))
            except (OSError, ValueError, KeyError):
                continue
        items.sort(key=lambda c: c.created_at)
        return items

    def create_message(self, content: str, role: Role, conversation_id: str) -> Message:
        return self.create_messages(conversation_id, [(content, role)])[0]

    def create_messages(self, conversation_id: str, items: Sequence[Tuple[str, Role]]) -> List[Message]:
        """一次性追加多条消息：先全部校验，再用一次写入 + fsync 落盘。

        一轮对话的 user / assistant 两条记录在同一次写入中落盘；任一条校验失败时一条也不写。
        """
        cdir = self._conv_root / conversation_id
        if not cdir.exists():
            raise BusinessError(code="CONVERSATION_NOT_FOUND", message=conversation_id, http_status=404)
        try:
            messages = [Message(role=role, content=content, conversation_id=conversation_id) for content, role in items]
        except SchemaError as e:
            raise BusinessError(code="INVALID_MESSAGE", message=str(e))
        lines = []
        for message in messages:
            payload = message.model_dump(mode="json")
            payload["created_at"] = _iso(message.created_at)
            lines.append(json.dumps(payload, ensure_ascii=False) + "\n")
        try:
            with self._lock, (cdir / "messages.jsonl").open("a", encoding="utf-8") as f:
                f.write("".join(lines))
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            raise BusinessError(code="STORE_WRITE_ERROR", message=str(e), http_status=500)
        return messages

    def get_messages_by_conversation(self, conversation_id: str) -> List[Message]:
        msgs_path = self._conv_root / conversation_id / "messages.jsonl"
        items: List[Message] = []
        if not msgs_path.exists():
            return items
        try:
            raw = msgs_path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise BusinessError(code="STORE_READ_ERROR", message=str(e), http_status=500)
        for line in raw.splitlines():
            if not line.strip():
                continue
            try:
                items.append(Message.from_payload(json.loads(line)))
            except (ValueError, TypeError, SchemaError):
                continue
        # 文件行序即插入顺序，不按时间戳重排
        return items

    def update_conversation_title(self, conversation_id: str, title: str) -> None:
        """更新会话标题。"""
        conv = self.get_conversation(conversation_id)
        conv.title = title
        self._write_meta(self._conv_root / conversation_id, conv)

    def delete_conversation(self, conversation_id: str) -> None:
        cdir = self._conv_root / conversation_id
        if not cdir.exists():
            raise BusinessError(code="CONVERSATION_NOT_FOUND", message=conversation_id, http_status=404)
        try:
            shutil.rmtree(cdir)
        except OSError as e:
            raise BusinessError(code="STORE_DELETE_ERROR", message=str(e), http_status=500)

    def _write_meta(self, cdir: Path, conv: Conversation) -> None:
        meta_path = cdir / "meta.json"
        tmp_path = cdir / f"meta.{uuid4().hex}.json.tmp"
        obj = {
            "id": conv.id,
            "title": conv.title,
            "user_id": conv.user_id,
            "created_at": _iso(conv.created_at),
        }
        try:
            tmp_path.write_text(json.dumps(obj, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, meta_path)
        except OSError as e:
            raise BusinessError(code="STORE_WRITE_ERROR", message=str(e), http_status=500)

    @staticmethod
    def _to_conversation(data: Dict[str, Any]) -> Conversation:
        return Conversation(
            id=data["id"],
            title=data.get("title") or "",
            user_id=data.get("user_id"),
            created_at=_parse_dt(data["created_at"]),
        )
