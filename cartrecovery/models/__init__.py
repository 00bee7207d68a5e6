from cartrecovery.models.abandonment import Abandonment
from cartrecovery.models.conversation import Conversation
from cartrecovery.models.job import Job
from cartrecovery.models.message import Message
from cartrecovery.models.user import User

__all__ = [
    "User",
    "Abandonment",
    "Conversation",
    "Message",
    "Job",
]
