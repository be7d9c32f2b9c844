"""
Journey-related enumerations.
"""

import enum


class JourneyStatus(str, enum.Enum):
    """Journey lifecycle status."""
    ACTIVE = "active"  # Initial state, tracking and check-ins running
    COMPLETED_SAFE = "completed_safe"  # Traveler confirmed arrival
    ALERT_TRIGGERED = "alert_triggered"  # Traveler reported danger or missed a check-in


class CheckInResponse(str, enum.Enum):
    """Traveler answer to an "Are you safe?" prompt."""
    YES = "yes"
    NO = "no"
    NO_RESPONSE = "no_response"  # Prompt timed out


class NotificationType(str, enum.Enum):
    """Notification log entry type."""
    START = "start"
    CHECKIN_ALERT = "checkin_alert"
    ARRIVAL_SAFE = "arrival_safe"
    DANGER_ALERT = "danger_alert"
