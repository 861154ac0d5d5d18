from __future__ import annotations


class RoutingConfigError(ValueError):
  """Malformed rule or profile data, rejected at ingestion."""


class NotificationNotFound(LookupError):
  def __init__(self, notification_id: str) -> None:
    super().__init__(f"Notification {notification_id} not found")
    self.notification_id = notification_id


class EscalationScheduleError(RuntimeError):
  def __init__(self, notification_id: str, message: str) -> None:
    super().__init__(f"Escalation for notification {notification_id} could not be scheduled: {message}")
    self.notification_id = notification_id


class DeliveryNotFound(LookupError):
  def __init__(self, notification_id: str, channel: str, target: str) -> None:
    super().__init__(f"No {channel} delivery to {target} for notification {notification_id}")
    self.notification_id = notification_id
