"""领域层模型与协议。

包含：
- models: 健康类别、记录摘要、ChatContext、ProviderResponse、重试策略与结果。
- conversation: 会话、消息状态机及 ConversationStore 抽象。
- records: HealthRecordSource 抽象。
- exceptions: 业务异常类型定义。
"""
