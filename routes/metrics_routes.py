from typing import List
from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from db.config import get_mysql_session
from models.schemas import BandwidthSummaryResponse, MetricSampleResponse
from providers.digitalocean import get_compute_client
from services.bandwidth_service import BandwidthAggregator
from services.metric_service import MetricSampler

router = APIRouter(prefix="/resources", tags=["Metrics"])


def get_metric_sampler(
    session: Session = Depends(get_mysql_session),
    provider=Depends(get_compute_client)
) -> MetricSampler:
    return MetricSampler(session, provider)


def get_bandwidth_aggregator(session: Session = Depends(get_mysql_session)) -> BandwidthAggregator:
    return BandwidthAggregator(session)


@router.get(
    "/{resource_id}/metrics/latest",
    response_model=MetricSampleResponse,
    summary="Latest usage sample",
    description="Served from storage when under five minutes old, otherwise fetched from the provider"
)
async def get_latest_sample(
    resource_id: int,
    sampler: MetricSampler = Depends(get_metric_sampler)
):
    try:
        return await sampler.get_latest_sample(resource_id)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e)
        )


@router.get(
    "/{resource_id}/metrics/history",
    response_model=List[MetricSampleResponse],
    summary="Usage sample history",
    description="Newest first"
)
def get_sample_history(
    resource_id: int,
    limit: int = Query(24, ge=1, le=1000),
    sampler: MetricSampler = Depends(get_metric_sampler)
):
    return sampler.get_sample_history(resource_id, limit)


@router.post(
    "/{resource_id}/metrics/refresh",
    response_model=MetricSampleResponse,
    summary="Force a fresh usage sample"
)
async def refresh_sample(
    resource_id: int,
    sampler: MetricSampler = Depends(get_metric_sampler)
):
    try:
        return await sampler.refresh_sample(resource_id)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e)
        )


@router.get(
    "/{resource_id}/bandwidth",
    response_model=BandwidthSummaryResponse,
    summary="Bandwidth usage for the current month"
)
def get_bandwidth(
    resource_id: int,
    aggregator: BandwidthAggregator = Depends(get_bandwidth_aggregator)
):
    return aggregator.get_usage_summary(resource_id)
