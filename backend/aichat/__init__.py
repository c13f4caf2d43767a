"""AI 聊天消息管线"""

__version__ = "0.1.0"
