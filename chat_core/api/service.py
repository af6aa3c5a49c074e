"""对外 API 服务模块。

提供组装管理器的工厂函数与简化的调用接口。
所有协作者显式创建并注入，不保留模块级单例。
"""

from typing import Any, Dict, Optional

from chat_core.config.settings import settings as default_settings
from chat_core.domain.conversation import ConversationStore
from chat_core.domain.records import HealthRecordSource
from chat_core.infrastructure.error_reporter import ErrorReporter
from chat_core.infrastructure.records.memory_source import InMemoryHealthRecordSource
from chat_core.infrastructure.storage.json_store import JsonConversationStore
from chat_core.pipeline.instruction_injection import InstructionFormatter
from chat_core.pipeline.manager import ChatPipelineConfig, MessageLifecycleManager
from chat_core.pipeline.streaming import StreamingUpdateCoordinator
from chat_core.providers import create_default_registry
from chat_core.providers.local_client import TokenEngine


def build_manager(
    cfg=None,
    store: Optional[ConversationStore] = None,
    record_source: Optional[HealthRecordSource] = None,
    local_engine: Optional[TokenEngine] = None,
) -> MessageLifecycleManager:
    """按配置组装 MessageLifecycleManager。

    Args:
        cfg: PipelineSettings 实例（可选，默认使用全局 settings）
        store: 会话存储（可选，默认 JsonConversationStore）
        record_source: 健康记录源（可选，默认空的内存记录源）
        local_engine: 本地推理运行时的 token 生成函数（可选）
    """
    cfg = cfg or default_settings
    return MessageLifecycleManager(
        store=store or JsonConversationStore(root=cfg.storage_root),
        record_source=record_source or InMemoryHealthRecordSource(),
        providers=create_default_registry(cfg, local_engine=local_engine),
        error_reporter=ErrorReporter(dedup_window=cfg.error_dedup_window),
        config=ChatPipelineConfig.from_settings(cfg),
        formatter=InstructionFormatter(cfg.injection_model_patterns),
        coordinator=StreamingUpdateCoordinator(interval=cfg.stream_update_interval),
    )


async def chat_once(
    question: str,
    manager: Optional[MessageLifecycleManager] = None,
    title: Optional[str] = None,
    use_streaming: Optional[bool] = None,
) -> Dict[str, Any]:
    """新建会话、发送一条消息并返回结果摘要。

    Returns:
        包含会话ID、用户消息、助手消息与 token 统计的字典

    Raises:
        各种 domain.exceptions 中定义的异常
    """
    manager = manager or build_manager()
    conv = await manager.start_new_conversation(title)
    reply = await manager.send_message(question, use_streaming=use_streaming)
    user = next(m for m in conv.messages if m.role.value == "user")
    return {
        "conversation_id": conv.id,
        "title": conv.title,
        "user_message": {
            "id": user.id,
            "content": user.content,
            "status": user.status.value,
        },
        "assistant_message": {
            "id": reply.id,
            "content": reply.content,
            "created_at": reply.created_at.isoformat(),
        },
        "tokens": reply.token_count,
        "response_time": reply.processing_time,
    }
