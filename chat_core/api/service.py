"""对外 API 服务模块。

提供简化的函数接口供上层应用（界面、脚本）调用。
"""

from typing import Optional, Dict, Any

from chat_core.config.settings import settings
from chat_core.agents.orchestrator import ChatOrchestrator
from chat_core.conversation.reconciler import ConversationReconciler
from chat_core.domain.conversation import ConversationStore
from chat_core.domain.models import Conversation, Message, format_ts
from chat_core.infrastructure.storage.json_store import JsonConversationStore
from chat_core.infrastructure.storage.sqlite_store import SqliteConversationStore
from chat_core.infrastructure.logging.logger import logger
from chat_core.providers import create_provider


_store: Optional[ConversationStore] = None
_orchestrator: Optional[ChatOrchestrator] = None


def create_store(backend: Optional[str] = None) -> ConversationStore:
    """根据配置创建会话存储实例。"""

    backend = (backend or settings.storage_backend).lower()
    if backend == "sqlite":
        return SqliteConversationStore()
    return JsonConversationStore(root=settings.storage_root)


def get_default_orchestrator() -> ChatOrchestrator:
    """获取默认的对话编排器实例（单例）。"""
    global _store, _orchestrator
    if _store is None:
        _store = create_store()
    if _orchestrator is None:
        _orchestrator = ChatOrchestrator(
            reconciler=ConversationReconciler(_store),
            provider_client=create_provider(),
        )
    return _orchestrator


def run_chat(
    user_input: str,
    conversation_id: Optional[str] = None,
    image_ref: Optional[str] = None,
    generate_image: bool = False,
) -> Dict[str, Any]:
    """运行一轮对话。

    Args:
        user_input: 用户输入内容
        conversation_id: 会话ID（可选，不提供则沿用当前会话或创建新会话）
        image_ref: 图片附件（可选）
        generate_image: 是否请求图片生成

    Returns:
        包含会话ID、标题、用户消息、助手消息与中断标记的字典

    Raises:
        各种 domain.exceptions 中定义的异常
    """
    try:
        orchestrator = get_default_orchestrator()
        result = orchestrator.send(
            user_input,
            image_ref=image_ref,
            conversation_id=conversation_id,
            generate_image=generate_image,
        )
    except Exception as e:
        logger.error(f"Chat failed: {e}", extra={"extra": {
            "conversation_id": conversation_id,
            "error": str(e),
        }})
        raise
    return {
        "conversation_id": result.conversation.id,
        "title": result.conversation.title,
        "user_message": _message_to_dict(result.user_message),
        "assistant_message": _message_to_dict(result.assistant_message),
        "interrupted": result.interrupted,
    }


def list_conversations() -> list[Dict[str, Any]]:
    """列出所有会话（最新创建的在前）。

    Returns:
        会话列表，每项包含 id, title, updated_at, message_count
    """
    reconciler = get_default_orchestrator().reconciler
    return [_conversation_summary(c) for c in reconciler.list_conversations()]


def get_conversation_messages(conversation_id: str) -> list[Dict[str, Any]]:
    """打开会话并返回其全部消息。"""
    reconciler = get_default_orchestrator().reconciler
    conv = reconciler.select(conversation_id)
    return [_message_to_dict(m) for m in conv.messages]


def rename_conversation(conversation_id: str, title: str) -> Dict[str, Any]:
    reconciler = get_default_orchestrator().reconciler
    return _conversation_summary(reconciler.rename(conversation_id, title))


def delete_conversation(conversation_id: str) -> None:
    get_default_orchestrator().reconciler.delete(conversation_id)


def clear_conversations() -> None:
    get_default_orchestrator().reconciler.clear_all()


def new_chat() -> None:
    get_default_orchestrator().reconciler.new_chat()


def _conversation_summary(conv: Conversation) -> Dict[str, Any]:
    return {
        "id": conv.id,
        "title": conv.title,
        "updated_at": format_ts(conv.updated_at),
        "message_count": len(conv.messages),
    }


def _message_to_dict(message: Message) -> Dict[str, Any]:
    return message.to_dict()
