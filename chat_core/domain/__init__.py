"""领域层模型与协议。

包含：
- models: Message / Conversation / StreamSession / TurnState 模型。
- conversation: ConversationStore 持久化协议。
- events: 面向 UI 的事件通知。
- exceptions: 业务异常类型定义。
"""
