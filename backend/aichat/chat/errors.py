"""聊天管线错误类型

每个错误携带对应的 HTTP 状态码，由 main.py 中的异常处理器统一转换为 JSON 响应。
"""


class ChatError(Exception):
    """聊天管线错误基类"""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ChatError):
    """请求内容不合法（例如没有任何消息）"""

    status_code = 400


class AuthorizationDenied(ChatError):
    """Hook 拒绝或对话归属不匹配"""

    status_code = 403


class NotFound(ChatError):
    """对话不存在，或无状态模式下访问对话接口"""

    status_code = 404


class ConversationConflict(ChatError):
    """并发修改同一对话，客户端可以重试"""

    status_code = 409


class PersistenceFailure(ChatError):
    """流式输出开始前的事务写入失败（已回滚）"""

    status_code = 500


class PostCompletionError(ChatError):
    """响应已发出后的持久化失败，只记录日志，不返回给客户端"""
