from .jobs import Job
from .queue_controls import QueueControl
from .webhooks import WebhookSubscription
from .webhook_delivery_logs import WebhookDeliveryLog
