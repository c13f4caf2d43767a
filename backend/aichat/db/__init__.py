"""数据库模块 - 对话与消息存储"""
from .adapter import StorageAdapter, StorageError
from .database import SqliteAdapter
from .memory import MemoryAdapter
from .models import Conversation, ConversationWithMessages, Message

__all__ = [
    'StorageAdapter',
    'StorageError',
    'SqliteAdapter',
    'MemoryAdapter',
    'Conversation',
    'ConversationWithMessages',
    'Message',
]
