from typing import List
from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from db.config import get_mysql_session
from models.schemas import ProvisionRequest, ResourceResponse, VolumeResizeRequest
from providers.digitalocean import get_compute_client
from services.billing_service import BillingService
from services.exceptions import InsufficientBalanceError
from services.resource_service import ResourceService

router = APIRouter(prefix="/resources", tags=["Resources"])


def get_resource_service(session: Session = Depends(get_mysql_session)) -> ResourceService:
    return ResourceService(session)


def get_billing_service(
    session: Session = Depends(get_mysql_session),
    provider=Depends(get_compute_client)
) -> BillingService:
    return BillingService(session, provider=provider)


@router.post(
    "/",
    response_model=ResourceResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Provision resource",
    description="Charges the first hour and records a provisioned droplet or volume"
)
def provision_resource(
    request: ProvisionRequest,
    service: BillingService = Depends(get_billing_service)
):
    try:
        return service.provision_resource(request)
    except InsufficientBalanceError as e:
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail=str(e)
        )
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e)
        )


@router.get(
    "/account/{account_id}",
    response_model=List[ResourceResponse],
    summary="Get account resources"
)
def get_account_resources(
    account_id: int,
    service: ResourceService = Depends(get_resource_service)
):
    return service.get_account_resources(account_id)


@router.get(
    "/{resource_id}",
    response_model=ResourceResponse,
    summary="Get resource"
)
def get_resource(
    resource_id: int,
    service: ResourceService = Depends(get_resource_service)
):
    return service.get_resource(resource_id)


@router.patch(
    "/{resource_id}/volume",
    response_model=ResourceResponse,
    summary="Resize volume",
    description="Grows a volume and charges the hourly cost difference"
)
def resize_volume(
    resource_id: int,
    request: VolumeResizeRequest,
    service: BillingService = Depends(get_billing_service)
):
    try:
        return service.resize_volume(request.account_id, resource_id, request.size_gb)
    except InsufficientBalanceError as e:
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail=str(e)
        )
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e)
        )


@router.delete(
    "/{resource_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete resource",
    description="Destroys the provider instance and removes the resource"
)
async def delete_resource(
    resource_id: int,
    account_id: int = Query(...),
    service: BillingService = Depends(get_billing_service)
):
    await service.delete_resource(account_id, resource_id)
