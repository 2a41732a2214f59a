"""领域层模型与协议。

包含：
- models: 内容块、ChatMessage / ChatRequest、模型流式事件与客户端 StreamEvent。
- conversation: 消息记录、客户令牌及 ConversationStore 抽象。
- exceptions: 业务异常类型定义。
"""
