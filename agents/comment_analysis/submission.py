from __future__ import annotations

from typing import Any, Dict, List, Optional

from agents.comment_analysis.schemas import JobData, JobMetadata
from services.queue.queue import JobOptions, JobQueue


BATCH_SIZE = 5

# Retry policy per job: 3 attempts, 2s -> 4s backoff
JOB_OPTIONS = dict(
    attempts=3,
    backoff_type="exponential",
    backoff_delay_ms=2000,
    remove_on_complete=1000,
    remove_on_fail=500,
)


def chunk(items: List[str], size: int) -> List[List[str]]:
    return [items[i:i + size] for i in range(0, len(items), size)]


def enqueue_comment_analysis(
    queue: JobQueue,
    comment_ids: List[str],
    metadata: Optional[Dict[str, Any]] = None,
    batch_size: int = BATCH_SIZE,
) -> Dict[str, Any]:
    """
    Split `comment_ids` into fixed-size batches and queue one job per batch.

    Each job's metadata records its position: batchIndex / totalBatches / totalComments.
    """
    if not comment_ids:
        raise ValueError("At least one comment id is required")

    batches = chunk(list(comment_ids), batch_size)
    jobs = []
    for index, batch in enumerate(batches):
        job_metadata = JobMetadata.model_validate(
            {
                **(metadata or {}),
                "batchIndex": index,
                "totalBatches": len(batches),
                "totalComments": len(comment_ids),
            }
        )
        data = JobData(comment_ids=batch, metadata=job_metadata)
        jobs.append(
            {
                "name": f"analyze-batch-{index}",
                "data": data.model_dump(by_alias=True, exclude_none=True),
                "options": JobOptions(**JOB_OPTIONS),
            }
        )

    created = queue.add_bulk(jobs)

    return {
        "success": True,
        "message": f"Queued {len(created)} jobs for {len(comment_ids)} comments",
        "details": {
            "totalComments": len(comment_ids),
            "batchSize": batch_size,
            "jobsCreated": len(created),
            "batches": [
                {"index": i, "jobId": job.id, "size": len(batch), "commentIds": batch}
                for i, (job, batch) in enumerate(zip(created, batches))
            ],
        },
    }
