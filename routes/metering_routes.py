from typing import List
from fastapi import APIRouter, Depends, Query

from metering.archive import MeteringRunArchive, get_run_archive
from models.schemas import MeteringRunResponse

router = APIRouter(prefix="/metering", tags=["Metering"])


@router.get(
    "/runs",
    response_model=List[MeteringRunResponse],
    summary="Recent metering runs",
    description="Archived hourly tick reports, newest first"
)
def get_recent_runs(
    limit: int = Query(24, ge=1, le=500),
    archive: MeteringRunArchive = Depends(get_run_archive)
):
    return archive.recent(limit)
