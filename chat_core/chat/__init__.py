"""聊天核心：编排器、会话缓存与匿名配额。"""
