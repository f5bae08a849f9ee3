"""
Job Queue — durable, lease-based job execution.

- Producers (scheduler, automation rules, manual actions) call JobStore.add_job
- WorkerPool claims jobs with a compare-and-swap lease and runs them
- JobProcessor performs the one remote action each job stands for
- Failures retry with backoff; exhausted jobs end FAILED
"""
from job_queue.retry import RetryPolicy
from job_queue.store import JobStore, NewJob
from job_queue.processor import JobProcessor
from job_queue.worker_pool import WorkerPool

__all__ = ["RetryPolicy", "JobStore", "NewJob", "JobProcessor", "WorkerPool"]
