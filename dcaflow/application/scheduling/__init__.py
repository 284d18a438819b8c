from .execution_scheduler import CANCELLED_ERROR, ExecutionScheduler, SchedulerStats

__all__ = ["CANCELLED_ERROR", "ExecutionScheduler", "SchedulerStats"]
