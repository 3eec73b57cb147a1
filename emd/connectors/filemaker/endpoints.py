"""EMD — FileMaker Job Source.

Builds the windowed job find query and returns transformed snapshots.
"""

from typing import Any, Dict, Iterable, List
from zoneinfo import ZoneInfo

from emd.config import settings
from emd.connectors.filemaker.client import FileMakerClient
from emd.connectors.filemaker.transformer import transform_records
from emd.models.job_models import ComparisonWindow, JobSnapshot, JobStatus
from emd.core.logging import get_logger

logger = get_logger("filemaker.endpoints")

DATE_FORMAT = "%m/%d/%Y"


def build_job_query(
    window: ComparisonWindow, job_types: Iterable[str]
) -> List[Dict[str, Any]]:
    """Date range in FileMaker ``start...end`` syntax; one request per job type (OR)."""
    date_range = f"{window.start.strftime(DATE_FORMAT)}...{window.end.strftime(DATE_FORMAT)}"
    types = list(job_types)
    if not types:
        return [{"job_date": date_range}]
    return [{"job_date": date_range, "job_type": f"=={t}"} for t in types]


class FileMakerJobSource:
    """Fetch the jobs whose logical date falls in the comparison window."""

    def __init__(
        self,
        client: FileMakerClient,
        allowed_job_types: Iterable[str] | None = None,
        batch_size: int | None = None,
        timezone_name: str | None = None,
    ):
        self.client = client
        self.allowed_job_types = list(
            allowed_job_types if allowed_job_types is not None else settings.allowed_job_types
        )
        self.batch_size = batch_size or settings.filemaker_batch_size
        self.tz = ZoneInfo(timezone_name or settings.source_timezone)

    async def fetch_jobs(self, window: ComparisonWindow) -> List[JobSnapshot]:
        query = build_job_query(window, self.allowed_job_types)
        sort = [{"fieldName": "job_date", "sortOrder": "descend"}]
        records = await self.client.find_all(query, self.batch_size, sort)
        snapshots = transform_records(records, self.tz)
        jobs = [s for s in snapshots if self._keep(s)]
        logger.info(
            f"Window {window.start}..{window.end}: {len(jobs)} jobs "
            f"({len(snapshots) - len(jobs)} filtered)"
        )
        return jobs

    def _keep(self, job: JobSnapshot) -> bool:
        # Deleted and blank-status records are not live jobs.
        if job.status == JobStatus.DELETED or not str(job.raw.get("job_status") or "").strip():
            return False
        if self.allowed_job_types and job.job_type not in self.allowed_job_types:
            return False
        return True

    async def close(self) -> None:
        await self.client.close()
