from .scheduler import LOCAL_JOBSTORE, PERSISTENT_JOBSTORE, ScheduledJobInfo, SchedulerService

__all__ = ["LOCAL_JOBSTORE", "PERSISTENT_JOBSTORE", "ScheduledJobInfo", "SchedulerService"]
