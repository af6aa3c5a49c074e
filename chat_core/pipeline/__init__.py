"""消息投递管线。

- retry: 指数退避重试执行器。
- context_builder: 健康上下文构建与压缩。
- instruction_injection: 首轮指令注入格式化。
- streaming: 流式更新合并与节流。
- events: 生命周期事件通道。
- manager: 消息生命周期管理器（编排以上组件）。
"""
