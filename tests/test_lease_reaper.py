import asyncio
from datetime import datetime, timedelta, timezone

from engagement.core.models import JobDraft, JobStatus, JobType
from engagement.jobs.lease_reaper import run_maintenance

NOW = datetime(2026, 6, 10, 12, 0, tzinfo=timezone.utc)


def test_run_maintenance_requeues_and_purges(harness) -> None:
    async def scenario() -> None:
        subject = await harness.add_subject()
        repository = harness.repository
        stale = await repository.insert_job(JobDraft(subject.subject_id, JobType.INSIGHT, NOW - timedelta(hours=1)))
        fresh = await repository.insert_job(JobDraft(subject.subject_id, JobType.INSIGHT, NOW - timedelta(hours=1)))
        old = await repository.insert_job(JobDraft(subject.subject_id, JobType.INSIGHT, NOW - timedelta(days=40)))
        repository.jobs[stale.job_id].status = JobStatus.PROCESSING
        repository.jobs[stale.job_id].claimed_at = NOW - timedelta(minutes=20)
        repository.jobs[fresh.job_id].status = JobStatus.PROCESSING
        repository.jobs[fresh.job_id].claimed_at = NOW - timedelta(minutes=1)
        repository.jobs[old.job_id].status = JobStatus.COMPLETED
        repository.jobs[old.job_id].processed_at = NOW - timedelta(days=31)

        summary = await run_maintenance(
            repository,
            stale_after_seconds=600,
            retention_days=30,
            batch_size=100,
            now=NOW,
        )

        assert (summary.requeued, summary.purged) == (1, 1)
        assert repository.jobs[stale.job_id].status == JobStatus.PENDING
        assert repository.jobs[stale.job_id].claimed_at is None
        assert repository.jobs[fresh.job_id].status == JobStatus.PROCESSING
        assert old.job_id not in repository.jobs

    asyncio.run(scenario())
