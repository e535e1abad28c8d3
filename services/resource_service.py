from datetime import datetime
from typing import Optional, List

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models.mysql_models import Resource
from models.schemas import ResourceKind, ResourceStatus
from services.exceptions import PersistenceError, ResourceNotFoundError


class ResourceService:
    def __init__(self, mysql_session: Session):
        self.mysql_session = mysql_session

    def get_resource(self, resource_id: int) -> Resource:
        resource = self.mysql_session.query(Resource).filter(Resource.id == resource_id).first()
        if not resource:
            raise ResourceNotFoundError(resource_id)
        return resource

    def get_owned_resource(self, account_id: int, resource_id: int) -> Resource:
        resource = self.get_resource(resource_id)
        if resource.account_id != account_id:
            raise ResourceNotFoundError(resource_id)
        return resource

    def get_account_resources(self, account_id: int) -> List[Resource]:
        return self.mysql_session.query(Resource).filter(
            Resource.account_id == account_id
        ).order_by(Resource.id).all()

    def get_all_resources(self, kind: Optional[ResourceKind] = None) -> List[Resource]:
        query = self.mysql_session.query(Resource)
        if kind is not None:
            query = query.filter(Resource.kind == ResourceKind(kind).value)
        return query.order_by(Resource.id).all()

    def add_resource(
        self,
        account_id: int,
        kind: ResourceKind,
        name: str,
        external_id: str,
        region: str,
        size: Optional[str] = None,
        size_gb: Optional[int] = None,
        status: ResourceStatus = ResourceStatus.ACTIVE
    ) -> Resource:
        """Stage a new resource in the current unit of work; the caller commits."""
        resource = Resource(
            account_id=account_id,
            kind=ResourceKind(kind).value,
            name=name,
            external_id=external_id,
            region=region,
            size=size,
            size_gb=size_gb,
            status=ResourceStatus(status).value,
            created_at=datetime.utcnow()
        )
        self.mysql_session.add(resource)
        self.mysql_session.flush()
        return resource

    def delete_resource(self, resource_id: int, commit: bool = True):
        resource = self.get_resource(resource_id)
        try:
            self.mysql_session.delete(resource)
            if commit:
                self.mysql_session.commit()
            else:
                self.mysql_session.flush()
        except SQLAlchemyError as e:
            self.mysql_session.rollback()
            raise PersistenceError(str(e)) from e

    def mark_monitored(self, resource: Resource, when: datetime):
        resource.last_monitored = when
        if resource.status == ResourceStatus.NEW.value:
            resource.status = ResourceStatus.ACTIVE.value
