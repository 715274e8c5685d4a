"""Domain errors raised by the event system's public entry points."""


class EventFlowError(Exception):
    """Base class for eventflow errors."""


class UnknownEventTypeError(EventFlowError, ValueError):
    def __init__(self, event_type):
        super().__init__(f"Unknown event type: {event_type}")
        self.event_type = event_type


class MissingExecutorError(EventFlowError):
    def __init__(self, job_type):
        super().__init__(f"No executor registered for job type: {job_type}")
        self.job_type = job_type


class InvalidWebhookError(EventFlowError, ValueError):
    """Rejected webhook configuration (bad URL, unknown event type)."""


class WebhookNotFoundError(EventFlowError, LookupError):
    def __init__(self, webhook_id: str):
        super().__init__("Webhook endpoint not found")
        self.webhook_id = webhook_id


class WebhookDeliveryNotFoundError(EventFlowError, LookupError):
    def __init__(self, delivery_id: str):
        super().__init__("Webhook delivery not found")
        self.delivery_id = delivery_id


class DeliveryAlreadyDeliveredError(EventFlowError, ValueError):
    def __init__(self, delivery_id: str):
        super().__init__("Webhook already delivered")
        self.delivery_id = delivery_id
