"""消息生命周期编排器。

一次提交按固定顺序经过以下阶段：

    Idle -> Validating -> QuotaCheck -> ConversationResolve -> Streaming -> Persisting -> Idle
                                                                         \\-> 标题生成（后台任务）

- 同一时刻只运行一条流水线（single-flight），忙碌时 submit/regenerate 直接忽略。
- 流式阶段与墙钟超时赛跑；超时后迟到的增量会被丢弃。
- 补全失败被分类后写入 assistant 消息，不会抛给 submit 的调用方。
- 存储失败只记日志，会话退化为未保存状态继续可用。
- 标题生成在流水线之外运行，只修改会话标题，不触碰消息列表。

UI 通过 subscribe() 接收 ChatSnapshot，消息列表只做整体替换。
"""

import asyncio
import logging
from dataclasses import replace
from typing import Any, Callable, Dict, List, Mapping, Optional, Set, Tuple
from uuid import uuid4

from chat_core.chat.cache import ConversationCache
from chat_core.chat.errors import ErrorKind, classify_error, error_message
from chat_core.chat.quota import UsageQuotaTracker, exhausted_message
from chat_core.chat.state import (
    BUSY_STATES,
    ChatSnapshot,
    ChunkAppended,
    MessageEvent,
    MessageRemoved,
    MessageReplaced,
    MessagesAppended,
    OrchestratorState,
    reduce_messages,
)
from chat_core.chat.text import provisional_title
from chat_core.config.settings import settings
from chat_core.domain.conversation import ConversationStore
from chat_core.domain.exceptions import EmptyResponseError
from chat_core.domain.models import Conversation, Message
from chat_core.infrastructure.logging.logger import logger
from chat_core.providers.base import CompletionClient, TitleGenerator


Listener = Callable[[ChatSnapshot], None]

QUOTA_EXHAUSTED = "quota_exhausted"


class MessageOrchestrator:
    def __init__(
        self,
        store: ConversationStore,
        completion_client: CompletionClient,
        title_generator: Optional[TitleGenerator] = None,
        quota: Optional[UsageQuotaTracker] = None,
        cache: Optional[ConversationCache] = None,
        owner_id: Optional[str] = None,
        default_model: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        max_context_messages: Optional[int] = None,
        provisional_title_length: Optional[int] = None,
    ):
        """
        Args:
            store: 会话存储
            completion_client: 流式补全客户端
            title_generator: 标题生成器（可选，缺省时不生成标题）
            quota: 匿名配额计数器，仅 owner_id 为空时使用
            cache: 会话消息缓存
            owner_id: 已登录用户 ID；None 表示匿名
            timeout_seconds: 单次提交的墙钟超时，默认取配置（90 秒）
        """
        self._store = store
        self._client = completion_client
        self._title_generator = title_generator
        self._quota = quota if quota is not None else UsageQuotaTracker()
        self._cache = cache if cache is not None else ConversationCache()
        self._owner_id = owner_id
        self._default_model = default_model or settings.default_model
        self._timeout = timeout_seconds if timeout_seconds is not None else settings.request_timeout_seconds
        self._max_context = max_context_messages or settings.max_context_messages
        self._title_length = provisional_title_length or settings.provisional_title_length

        self._state = OrchestratorState.IDLE
        self._messages: Tuple[Message, ...] = ()
        self._conversation_id: Optional[str] = None
        self._conversations: Tuple[Conversation, ...] = ()
        self._last_error: Optional[str] = None
        self._run_id: Optional[str] = None
        # new/load/delete 会切换“当前打开的会话”，流水线据此判断自己是否已过期
        self._epoch = 0
        self._titled: Set[str] = set()
        self._listeners: List[Listener] = []
        self._background: Set[asyncio.Task] = set()

    # ---- 只读视图 ----

    @property
    def state(self) -> OrchestratorState:
        return self._state

    @property
    def messages(self) -> Tuple[Message, ...]:
        return self._messages

    @property
    def conversation_id(self) -> Optional[str]:
        return self._conversation_id

    @property
    def conversations(self) -> Tuple[Conversation, ...]:
        return self._conversations

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    @property
    def is_generating(self) -> bool:
        return self._state in BUSY_STATES

    @property
    def is_anonymous(self) -> bool:
        return self._owner_id is None

    @property
    def quota(self) -> UsageQuotaTracker:
        return self._quota

    @property
    def cache(self) -> ConversationCache:
        return self._cache

    def snapshot(self) -> ChatSnapshot:
        return ChatSnapshot(
            state=self._state,
            messages=self._messages,
            conversation_id=self._conversation_id,
            last_error=self._last_error,
        )

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """注册状态监听器，返回取消订阅的函数。"""

        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # ---- 提交与重新生成 ----

    async def submit(self, text: str, model_id: Optional[str] = None) -> None:
        """提交一条用户消息并驱动完整流水线。

        流水线忙碌或文本为空时直接返回；任何补全失败都转换成 assistant 消息。
        """

        if self.is_generating:
            self._log(logging.INFO, "Submission ignored, pipeline busy", {"run_id": self._run_id})
            return
        await self._run(text, model_id or self._default_model)

    async def regenerate(self) -> None:
        """移除最近一条 assistant 消息，并用它之前的 user 消息重新提交。"""

        if self.is_generating:
            return
        assistant_idx = self._last_index("assistant", len(self._messages))
        if assistant_idx is None:
            return
        user_idx = self._last_index("user", assistant_idx)
        if user_idx is None:
            return
        assistant = self._messages[assistant_idx]
        user = self._messages[user_idx]

        # 缓存与存储中的旧回答保留到新回答落盘之后再替换
        self._dispatch(MessageRemoved(assistant.id))
        self._log(
            logging.INFO,
            "Regenerating response",
            {"conversation_id": self._conversation_id},
            removed_message_id=assistant.id,
        )
        await self._run(
            user.content,
            assistant.model_id or self._default_model,
            existing_user=user,
            replaces=assistant,
        )

    async def _run(
        self,
        text: str,
        model_id: str,
        existing_user: Optional[Message] = None,
        replaces: Optional[Message] = None,
    ) -> None:
        run_id = f"run-{uuid4().hex}"
        self._run_id = run_id
        log_ctx: Dict[str, Any] = {"run_id": run_id, "model": model_id}
        placeholder = Message.create("assistant", "", model_id=model_id)
        try:
            await self._pipeline(run_id, text, model_id, placeholder, existing_user, replaces, log_ctx)
        finally:
            # 调用方被取消等情况下，保证不会停留在忙碌状态
            if self._run_id == run_id and self._state in BUSY_STATES:
                self._log(logging.WARNING, "Pipeline interrupted", log_ctx, state=self._state.value)
                if any(m.id == placeholder.id for m in self._messages):
                    kind = ErrorKind.UNKNOWN
                    self._dispatch(
                        MessageReplaced(
                            placeholder.id,
                            replace(placeholder, content=error_message(kind), error=kind.value),
                        )
                    )
                    self._last_error = kind.value
                self._transition(OrchestratorState.IDLE, log_ctx)

    async def _pipeline(
        self,
        run_id: str,
        text: str,
        model_id: str,
        placeholder: Message,
        existing_user: Optional[Message],
        replaces: Optional[Message],
        log_ctx: Dict[str, Any],
    ) -> None:
        epoch = self._epoch
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._timeout

        # 1. Validating
        self._transition(OrchestratorState.VALIDATING, log_ctx)
        content = (text or "").strip()
        if not content:
            self._transition(OrchestratorState.IDLE, log_ctx)
            return
        self._last_error = None

        accepted_before = sum(1 for m in self._messages if m.error is None)
        user_msg = existing_user or Message.create("user", content)
        if existing_user is None:
            self._dispatch(MessagesAppended((user_msg, placeholder)))
        else:
            self._dispatch(MessagesAppended((placeholder,)))
        history = self._build_history(self._messages[:-1])

        # 2. QuotaCheck
        self._transition(OrchestratorState.QUOTA_CHECK, log_ctx)
        if self.is_anonymous:
            if not self._quota.can_send():
                stats = self._quota.stats()
                self._dispatch(
                    MessageReplaced(
                        placeholder.id,
                        replace(placeholder, content=exhausted_message(stats), error=QUOTA_EXHAUSTED),
                    )
                )
                if existing_user is None:
                    # 未被受理的用户消息不计入上下文与标题判定
                    self._dispatch(MessageReplaced(user_msg.id, replace(user_msg, error=QUOTA_EXHAUSTED)))
                self._last_error = QUOTA_EXHAUSTED
                self._log(logging.INFO, "Anonymous quota exhausted", log_ctx, count=stats.count, limit=stats.limit)
                self._transition(OrchestratorState.IDLE, log_ctx)
                return
            self._quota.record_send()

        # 3. ConversationResolve
        self._transition(OrchestratorState.CONVERSATION_RESOLVE, log_ctx)
        conversation_id = await self.resolve_conversation(content, model_id)
        log_ctx["conversation_id"] = conversation_id

        # 4. Streaming
        self._transition(OrchestratorState.STREAMING, log_ctx)
        if conversation_id and user_msg.conversation_id is None:
            user_msg = await self._persist_user(conversation_id, user_msg, log_ctx)
        if conversation_id:
            self._cache_append(epoch, conversation_id, user_msg)

        def on_chunk(chunk: str) -> None:
            # 超时或失败后 state 已离开 STREAMING，迟到的增量直接丢弃
            if self._run_id != run_id or self._state is not OrchestratorState.STREAMING:
                return
            self._dispatch(ChunkAppended(placeholder.id, chunk))

        self._log(logging.INFO, "Calling completion client", log_ctx, message_count=len(history))
        try:
            full_text = await self._stream(history, model_id, on_chunk, conversation_id, deadline - loop.time())
            if not full_text.strip():
                raise EmptyResponseError(code="EMPTY_RESPONSE", message="empty response from completion client")
        except Exception as exc:
            kind = classify_error(exc)
            self._fail(placeholder, kind, exc, log_ctx)
            return

        # 5. Persisting
        self._transition(OrchestratorState.PERSISTING, log_ctx)
        final = replace(placeholder, content=full_text)
        self._dispatch(MessageReplaced(placeholder.id, final))
        if conversation_id:
            saved = True
            try:
                stored = await self._store.save_message(conversation_id, "assistant", full_text, model_id)
            except Exception as e:
                saved = False
                self._log(logging.WARNING, "Failed to save assistant message", log_ctx, error=str(e))
            else:
                self._dispatch(MessageReplaced(final.id, stored))
                final = stored
                self._log(logging.INFO, "Stored assistant message", log_ctx, message_id=stored.id)
            if replaces is None:
                self._cache_append(epoch, conversation_id, final)
            elif saved:
                self._cache_replace(epoch, conversation_id, replaces.id, final)
                await self._cleanup_duplicates(conversation_id, log_ctx)
            else:
                # 存储里仍是旧回答，丢弃缓存让下次打开时回源
                self._cache.evict(conversation_id)

        # 6. TitleGeneration（后台）
        accepted_after = accepted_before + (1 if existing_user is None else 0) + 1
        if conversation_id and self._is_first_exchange(epoch, conversation_id, accepted_after):
            exchange = [
                {"role": user_msg.role, "content": user_msg.content},
                {"role": final.role, "content": final.content},
            ]
            self._spawn_title_generation(conversation_id, exchange, log_ctx)

        self._transition(OrchestratorState.IDLE, log_ctx)

    async def _stream(
        self,
        history: List[Message],
        model_id: str,
        on_chunk: Callable[[str], None],
        conversation_id: Optional[str],
        remaining: float,
    ) -> str:
        """调用补全客户端并与超时赛跑。

        超时或外层被取消时取消客户端任务但不等待其结束，迟到的结果由 on_chunk 的状态检查丢弃。
        """

        task = asyncio.ensure_future(self._client.send(history, model_id, on_chunk, conversation_id))
        try:
            done, _ = await asyncio.wait({task}, timeout=max(0.0, remaining))
        except BaseException:
            task.cancel()
            task.add_done_callback(_discard_result)
            raise
        if task in done:
            return task.result()
        task.cancel()
        task.add_done_callback(_discard_result)
        raise asyncio.TimeoutError("request took too long")

    def _fail(self, placeholder: Message, kind: ErrorKind, exc: BaseException, log_ctx: Dict[str, Any]) -> None:
        failed = replace(placeholder, content=error_message(kind), error=kind.value)
        self._dispatch(MessageReplaced(placeholder.id, failed))
        self._last_error = kind.value
        self._log(logging.ERROR, "Completion failed", log_ctx, error_kind=kind.value, error=str(exc))
        self._transition(OrchestratorState.IDLE, log_ctx)

    # ---- 会话解析与生命周期 ----

    async def resolve_conversation(self, text: str, model_id: str) -> Optional[str]:
        """返回当前打开的会话 ID；没有时创建一个新会话。

        创建失败时返回 None，本次对话继续但不持久化。
        """

        if self._conversation_id:
            return self._conversation_id
        epoch = self._epoch
        title = provisional_title(text, self._title_length)
        try:
            conv = await self._store.create_conversation(self._owner_id, title, model_id)
        except Exception as e:
            self._log(
                logging.WARNING,
                "Failed to create conversation, continuing unsaved",
                {"owner_id": self._owner_id},
                error=str(e),
            )
            return None
        self._conversations = (conv,) + tuple(c for c in self._conversations if c.id != conv.id)
        if epoch == self._epoch:
            self._conversation_id = conv.id
            self._cache.put(conv.id, [])
        self._log(logging.INFO, "Created new conversation", {"conversation_id": conv.id}, title=title)
        return conv.id

    def new_conversation(self) -> None:
        """开始新会话：清空缓存与当前消息。不会取消正在进行的流式请求。"""

        self._cache.clear()
        self._reset_open_conversation()
        self._log(logging.INFO, "New conversation started", {})

    async def load_conversation(self, conversation_id: str) -> Tuple[Message, ...]:
        """打开一个已有会话，缓存未命中时从存储读取并回填缓存。"""

        messages = self._cache.get(conversation_id)
        if messages is None:
            messages = await self._store.get_conversation_messages(conversation_id)
            self._cache.put(conversation_id, messages)
            self._log(
                logging.INFO,
                "Loaded conversation from store",
                {"conversation_id": conversation_id},
                message_count=len(messages),
            )
        self._epoch += 1
        self._conversation_id = conversation_id
        self._messages = tuple(messages)
        self._last_error = None
        self._notify()
        return self._messages

    async def delete_conversation(self, conversation_id: str) -> None:
        await self._store.delete_conversation(conversation_id)
        self._cache.evict(conversation_id)
        self._conversations = tuple(c for c in self._conversations if c.id != conversation_id)
        if conversation_id == self._conversation_id:
            self._reset_open_conversation()
        else:
            self._notify()
        self._log(logging.INFO, "Deleted conversation", {"conversation_id": conversation_id})

    async def refresh_conversations(self) -> Tuple[Conversation, ...]:
        """从存储重新读取当前用户的会话列表（按更新时间倒序）。"""

        self._conversations = tuple(await self._store.list_conversations(self._owner_id))
        self._notify()
        return self._conversations

    async def wait_for_background(self) -> None:
        """等待所有后台标题任务结束。"""

        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def _reset_open_conversation(self) -> None:
        self._epoch += 1
        self._conversation_id = None
        self._messages = ()
        self._last_error = None
        self._notify()

    # ---- 标题生成 ----

    def _spawn_title_generation(
        self, conversation_id: str, exchange: List[Mapping[str, str]], log_ctx: Dict[str, Any]
    ) -> None:
        if self._title_generator is None:
            return
        self._titled.add(conversation_id)
        task = asyncio.create_task(self._generate_title(conversation_id, exchange, dict(log_ctx)))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _generate_title(
        self, conversation_id: str, exchange: List[Mapping[str, str]], log_ctx: Dict[str, Any]
    ) -> None:
        try:
            title = (await self._title_generator.generate_title(exchange) or "").strip()
            if not title:
                return
            await self._store.update_conversation_title(conversation_id, title)
        except Exception as e:
            self._log(logging.INFO, "Title generation failed", log_ctx, error=str(e))
            return
        self._conversations = tuple(
            replace(c, title=title) if c.id == conversation_id else c for c in self._conversations
        )
        self._log(logging.INFO, "Updated conversation title", log_ctx, title=title)
        self._notify()

    # ---- 辅助方法 ----

    async def _persist_user(self, conversation_id: str, user_msg: Message, log_ctx: Dict[str, Any]) -> Message:
        try:
            stored = await self._store.save_message(conversation_id, "user", user_msg.content)
        except Exception as e:
            self._log(logging.WARNING, "Failed to save user message", log_ctx, error=str(e))
            return user_msg
        self._dispatch(MessageReplaced(user_msg.id, stored))
        self._log(logging.INFO, "Stored user message", log_ctx, message_id=stored.id)
        return stored

    async def _cleanup_duplicates(self, conversation_id: str, log_ctx: Dict[str, Any]) -> None:
        try:
            removed = await self._store.remove_duplicate_messages(conversation_id)
        except Exception as e:
            self._log(logging.WARNING, "Duplicate cleanup failed", log_ctx, error=str(e))
            return
        if removed:
            self._log(logging.INFO, "Removed duplicate messages", log_ctx, removed=removed)

    def _cache_append(self, epoch: int, conversation_id: str, message: Message) -> None:
        # 只更新当前打开的会话；已切走的会话丢弃缓存，下次打开时回源
        if epoch != self._epoch or conversation_id != self._conversation_id:
            self._cache.evict(conversation_id)
            return
        cached = self._cache.get(conversation_id)
        if cached is not None and all(m.id != message.id for m in cached):
            self._cache.append(conversation_id, message)

    def _cache_replace(self, epoch: int, conversation_id: str, old_id: str, message: Message) -> None:
        if epoch != self._epoch or conversation_id != self._conversation_id:
            # 后台会话的缓存已与存储不一致，下次打开时回源
            self._cache.evict(conversation_id)
            return
        cached = self._cache.get(conversation_id)
        if cached is None:
            return
        if any(m.id == old_id for m in cached):
            cached = [message if m.id == old_id else m for m in cached]
        else:
            cached.append(message)
        self._cache.put(conversation_id, cached)

    def _is_first_exchange(self, epoch: int, conversation_id: str, accepted_after: int) -> bool:
        """会话恰好只有首轮问答（2 条消息）时才生成标题。"""

        if conversation_id in self._titled:
            return False
        cached = self._cache.get(conversation_id) if epoch == self._epoch else None
        count = len(cached) if cached is not None else accepted_after
        return count == 2

    def _build_history(self, messages: Tuple[Message, ...]) -> List[Message]:
        """发给补全服务的上下文：去掉失败提示与空消息，只保留最近 N 条。"""

        history = [m for m in messages if m.error is None and m.content.strip()]
        return history[-self._max_context:]

    def _last_index(self, role: str, end: int) -> Optional[int]:
        for idx in range(end - 1, -1, -1):
            if self._messages[idx].role == role:
                return idx
        return None

    def _dispatch(self, event: MessageEvent) -> None:
        self._messages = reduce_messages(self._messages, event)
        self._notify()

    def _transition(self, state: OrchestratorState, log_ctx: Dict[str, Any]) -> None:
        self._state = state
        logger.debug("State transition", extra={"extra": {**log_ctx, "state": state.value}})
        self._notify()

    def _notify(self) -> None:
        snap = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snap)
            except Exception:
                logger.exception("State listener failed")

    @staticmethod
    def _log(level: int, message: str, log_ctx: Dict[str, Any], **fields: Any) -> None:
        payload = dict(log_ctx)
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})


def _discard_result(task: "asyncio.Future[Any]") -> None:
    # 取消后的任务可能仍以异常结束，这里取走结果避免 "never retrieved" 警告
    if not task.cancelled():
        task.exception()
