import asyncio
import json
import os
import shutil
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

from chat_core.chat.text import sanitize_content
from chat_core.config.settings import settings
from chat_core.domain.conversation import ConversationStore
from chat_core.domain.exceptions import BusinessError
from chat_core.domain.models import Conversation, Message, MessageRole, new_message_id


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_dt(value: Any) -> datetime:
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


class JsonConversationStore(ConversationStore):
    """基于本地文件的会话存储。

    目录结构：``<root>/conversations/<conversation_id>/meta.json`` 保存会话元数据，
    同目录下的 ``messages.jsonl`` 按追加顺序保存消息。文件 I/O 在线程池中执行，
    不阻塞事件循环。
    """

    def __init__(self, root: str | Path | None = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._conv_root = self._root / "conversations"
        self._conv_root.mkdir(parents=True, exist_ok=True)

    # ---- ConversationStore ----

    async def create_conversation(
        self, owner_id: Optional[str], initial_title: str, model_id: str
    ) -> Conversation:
        return await asyncio.to_thread(self._create_conversation, owner_id, initial_title, model_id)

    async def get_conversation(self, conversation_id: str) -> Conversation:
        return await asyncio.to_thread(self._read_meta, conversation_id)

    async def list_conversations(self, owner_id: Optional[str] = None) -> List[Conversation]:
        return await asyncio.to_thread(self._list_conversations, owner_id)

    async def save_message(
        self,
        conversation_id: str,
        role: MessageRole,
        content: str,
        model_id: Optional[str] = None,
    ) -> Message:
        return await asyncio.to_thread(self._save_message, conversation_id, role, content, model_id)

    async def get_conversation_messages(self, conversation_id: str) -> List[Message]:
        return await asyncio.to_thread(self._read_messages, conversation_id)

    async def update_conversation_title(self, conversation_id: str, title: str) -> None:
        await asyncio.to_thread(self._update_title, conversation_id, title)

    async def delete_conversation(self, conversation_id: str) -> None:
        await asyncio.to_thread(self._delete_conversation, conversation_id)

    async def remove_duplicate_messages(self, conversation_id: Optional[str] = None) -> int:
        """删除重复的 assistant 消息，返回删除条数。

        同一条 user 消息之后若有多条 assistant 回复（例如重新生成），只保留最新一条。
        可重复调用，没有重复时不做任何修改。
        """
        return await asyncio.to_thread(self._remove_duplicates, conversation_id)

    # ---- 同步实现 ----

    def _create_conversation(self, owner_id: Optional[str], title: str, model_id: str) -> Conversation:
        cid = f"c-{uuid4().hex}"
        cdir = self._conv_root / cid
        try:
            cdir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise BusinessError(code="STORE_WRITE_ERROR", message=str(e))
        now = datetime.now(timezone.utc)
        conv = Conversation(
            id=cid,
            title=title,
            model_id=model_id,
            owner_id=owner_id,
            created_at=now,
            updated_at=now,
        )
        self._write_meta(cdir, conv)
        return conv

    def _list_conversations(self, owner_id: Optional[str]) -> List[Conversation]:
        items: List[Conversation] = []
        for cdir in self._conv_root.glob("*/"):
            meta_path = cdir / "meta.json"
            if not meta_path.exists():
                continue
            try:
                conv = self._to_conversation(json.loads(meta_path.read_text(encoding="utf-8")))
            except (OSError, ValueError, KeyError):
                continue
            # owner_id 为 None 时只返回匿名会话
            if conv.owner_id != owner_id:
                continue
            items.append(conv)
        items.sort(key=lambda c: c.updated_at, reverse=True)
        return items

    def _save_message(
        self,
        conversation_id: str,
        role: MessageRole,
        content: str,
        model_id: Optional[str],
    ) -> Message:
        cdir = self._conv_dir(conversation_id)
        message = Message(
            id=new_message_id(),
            role=role,
            content=sanitize_content(content),
            created_at=datetime.now(timezone.utc),
            conversation_id=conversation_id,
            model_id=model_id if role == "assistant" else None,
        )
        try:
            line = json.dumps(self._message_payload(message), ensure_ascii=False)
            with (cdir / "messages.jsonl").open("a", encoding="utf-8") as f:
                f.write(line + "\n")
        except OSError as e:
            raise BusinessError(code="STORE_WRITE_ERROR", message=str(e))
        conv = self._read_meta(conversation_id)
        conv.updated_at = message.created_at
        self._write_meta(cdir, conv)
        return message

    def _read_messages(self, conversation_id: str) -> List[Message]:
        msgs_path = self._conv_dir(conversation_id) / "messages.jsonl"
        items: List[Message] = []
        if not msgs_path.exists():
            return items
        try:
            lines = msgs_path.read_text(encoding="utf-8").splitlines()
        except OSError as e:
            raise BusinessError(code="STORE_READ_ERROR", message=str(e))
        for line in lines:
            try:
                items.append(self._to_message(json.loads(line)))
            except (ValueError, KeyError):
                continue
        # sort 是稳定的，同一时间戳保持写入顺序
        items.sort(key=lambda m: m.created_at)
        return items

    def _update_title(self, conversation_id: str, title: str) -> None:
        conv = self._read_meta(conversation_id)
        conv.title = title
        conv.updated_at = datetime.now(timezone.utc)
        self._write_meta(self._conv_dir(conversation_id), conv)

    def _delete_conversation(self, conversation_id: str) -> None:
        cdir = self._conv_dir(conversation_id)
        try:
            shutil.rmtree(cdir)
        except OSError as e:
            raise BusinessError(code="STORE_DELETE_ERROR", message=str(e))

    def _remove_duplicates(self, conversation_id: Optional[str]) -> int:
        if conversation_id:
            targets = [self._conv_dir(conversation_id)]
        else:
            targets = [p for p in self._conv_root.glob("*/") if (p / "meta.json").exists()]
        removed = 0
        for cdir in targets:
            messages = self._read_messages(cdir.name)
            keep: List[Message] = []
            pending: Optional[Message] = None
            for msg in messages:
                if msg.role == "assistant":
                    if pending is not None:
                        removed += 1
                    pending = msg
                    continue
                if pending is not None:
                    keep.append(pending)
                    pending = None
                keep.append(msg)
            if pending is not None:
                keep.append(pending)
            if len(keep) != len(messages):
                self._rewrite_messages(cdir, keep)
        return removed

    # ---- 辅助方法 ----

    def _conv_dir(self, conversation_id: str) -> Path:
        cdir = self._conv_root / conversation_id
        if not (cdir / "meta.json").exists():
            raise BusinessError(code="CONVERSATION_NOT_FOUND", message=conversation_id, http_status=404)
        return cdir

    def _read_meta(self, conversation_id: str) -> Conversation:
        meta_path = self._conv_dir(conversation_id) / "meta.json"
        try:
            data = json.loads(meta_path.read_text(encoding="utf-8"))
            return self._to_conversation(data)
        except (OSError, ValueError, KeyError) as e:
            raise BusinessError(code="STORE_READ_ERROR", message=str(e))

    def _write_meta(self, cdir: Path, conv: Conversation) -> None:
        meta_path = cdir / "meta.json"
        tmp_path = cdir / f"meta.{uuid4().hex}.json.tmp"
        obj = {
            "id": conv.id,
            "title": conv.title,
            "model_id": conv.model_id,
            "owner_id": conv.owner_id,
            "created_at": _iso(conv.created_at),
            "updated_at": _iso(conv.updated_at),
        }
        try:
            tmp_path.write_text(json.dumps(obj, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, meta_path)
        except OSError as e:
            raise BusinessError(code="STORE_WRITE_ERROR", message=str(e))

    def _rewrite_messages(self, cdir: Path, messages: List[Message]) -> None:
        msgs_path = cdir / "messages.jsonl"
        tmp_path = cdir / f"messages.{uuid4().hex}.jsonl.tmp"
        body = "".join(json.dumps(self._message_payload(m), ensure_ascii=False) + "\n" for m in messages)
        try:
            tmp_path.write_text(body, encoding="utf-8")
            os.replace(tmp_path, msgs_path)
        except OSError as e:
            raise BusinessError(code="STORE_WRITE_ERROR", message=str(e))

    @staticmethod
    def _message_payload(message: Message) -> Dict[str, Any]:
        payload = asdict(message)
        payload["created_at"] = _iso(message.created_at)
        return payload

    @staticmethod
    def _to_conversation(data: Dict[str, Any]) -> Conversation:
        return Conversation(
            id=data["id"],
            title=data.get("title") or "",
            model_id=data.get("model_id") or "",
            owner_id=data.get("owner_id"),
            created_at=_parse_dt(data["created_at"]),
            updated_at=_parse_dt(data["updated_at"]),
        )

    @staticmethod
    def _to_message(data: Dict[str, Any]) -> Message:
        return Message(
            id=data["id"],
            role=data["role"],
            content=data.get("content") or "",
            created_at=_parse_dt(data["created_at"]),
            conversation_id=data.get("conversation_id"),
            model_id=data.get("model_id"),
            error=data.get("error"),
        )
