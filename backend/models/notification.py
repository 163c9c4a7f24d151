from enum import Enum


class NotificationChannel(str, Enum):
    PUSH   = "push"
    IN_APP = "in_app"


class NotificationStatus(str, Enum):
    PENDING = "pending"
    SENT    = "sent"
    FAILED  = "failed"
    READ    = "read"
