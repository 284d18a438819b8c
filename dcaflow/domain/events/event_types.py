"""Event type definitions."""

from enum import Enum


class EventType(str, Enum):
    """Event types published on the bus."""

    DCA_PLAN_CREATED = "dca_plan_created"
    DCA_PLAN_UPDATED = "dca_plan_updated"
    DCA_EXECUTION_STARTED = "dca_execution_started"
    DCA_LEG_EXECUTED = "dca_leg_executed"
    DCA_EXECUTION_COMPLETED = "dca_execution_completed"
    DCA_EXECUTION_FAILED = "dca_execution_failed"
    DCA_EXECUTION_PAUSED = "dca_execution_paused"
    DCA_EXECUTION_RESUMED = "dca_execution_resumed"
    MARKET_DATA_UPDATED = "market_data_updated"
    RISK_ASSESSMENT_CHANGED = "risk_assessment_changed"
    USER_PREFERENCE_UPDATED = "user_preference_updated"
    SESSION_CREATED = "session_created"
    SESSION_EXPIRED = "session_expired"
    AGENT_ERROR = "agent_error"
    AGENT_WARNING = "agent_warning"


ALL_EVENT_TYPES: frozenset[EventType] = frozenset(EventType)
