from enum import Enum

# Stored as strings (native enums disabled for easier evolution).


class QueueNameEnum(str, Enum):
    EMAIL = "email"
    WEBHOOK = "webhook"
    WORKFLOW = "workflow"
    REPORT = "report"


class JobStateEnum(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    DELAYED = "delayed"
    COMPLETED = "completed"
    FAILED = "failed"
    # Waiting jobs of a paused queue; moved back to waiting on resume.
    PAUSED = "paused"


class WebhookLastStatusEnum(str, Enum):
    NEVER = "never"
    SUCCESS = "success"
    FAILED = "failed"


class DeliveryStatusEnum(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
