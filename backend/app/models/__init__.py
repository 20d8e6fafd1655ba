from .chat import Chat
from .message import Message
from .checkpoint import Checkpoint

__all__ = ["Chat", "Message", "Checkpoint"]
