from __future__ import annotations

import logging

from app.jobs import UploadJob
from app.repositories.upload_queue import UploadQueueRepository

logger = logging.getLogger(__name__)


class JobClaimer:
    """Hands out the oldest queued job to exactly one caller.

    Atomicity lives in the repository: the row is selected and flipped to
    inprogress in one step, so concurrent claimers never share a job.
    """

    def __init__(self, *, repository: UploadQueueRepository) -> None:
        self._repository = repository

    def claim_next_queued(self) -> UploadJob | None:
        job = self._repository.claim_next_queued()
        if job is None:
            logger.debug("upload_queue_claim_empty")
            return None
        logger.info("upload_queue_claimed job_id=%s file_name=%s", job.id, job.file_name)
        return job
