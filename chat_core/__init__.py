"""Health Chat Core 顶层包。

该包实现健康对话助手的消息投递管线：
配置加载、领域模型、健康上下文构建、首轮指令注入、
多后端 Provider 适配、流式更新合并、带退避的重试执行，
以及负责整个消息生命周期的管理器与持久化存储。
"""

from chat_core.api.service import build_manager, chat_once

__all__ = ["build_manager", "chat_once"]
