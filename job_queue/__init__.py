"""
Scheduled delivery — processes Messages stored with `status="scheduled"`.

- ScheduledMessageProcessor.process_due: claim, then send, each due Message
- ScheduledMessagePoller: in-process interval trigger (cron replacement)
"""
from job_queue.scheduler import (
    ProcessSummary,
    ScheduledMessagePoller,
    ScheduledMessageProcessor,
)

__all__ = ["ProcessSummary", "ScheduledMessagePoller", "ScheduledMessageProcessor"]
