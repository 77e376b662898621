"""领域层模型与协议。

包含：
- models: Message / Conversation 以及发给 Provider 的 ChatMessage / ChatRequest 等模型。
- conversation: ConversationStore 抽象（异步）。
- exceptions: 业务异常类型定义。
"""
