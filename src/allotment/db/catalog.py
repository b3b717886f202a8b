from __future__ import annotations

import logging

from sqlalchemy import cast
from sqlalchemy import types
from sqlalchemy.sql import or_
from uuid import uuid4 as new_uuid

from allotment.context.core import ContextServicesMixin
from allotment.db.models import Resource
from allotment.db.models.resource import RESOURCE_TYPES
from allotment.modules import errors
from allotment.modules.utils import as_uuid


from typing import Any
from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from uuid import UUID

    from allotment.context.core import Context
    from allotment.db.models.resource import ResourceType


log = logging.getLogger('allotment')


class Catalog(ContextServicesMixin):
    """ Looks up resources on behalf of an organization.

    Resources an organization may not see (as decided by the ``visibility``
    service of the context) are treated as if they did not exist.

    """

    def __init__(self, context: Context):
        self.context = context

    def get(
        self,
        resource_id: UUID | str,
        organization_id: UUID | None = None,
        lock: bool = False
    ) -> Resource:
        """ Returns the resource with the given id.

        :organization_id:
            The organization of the caller, None for system callers.

        :lock:
            If true, the row of the resource is locked until the end of the
            transaction (on databases supporting ``SELECT ... FOR UPDATE``).

        """
        uuid = as_uuid(resource_id)

        if uuid is None:
            raise errors.UnknownResource(resource_id)

        query = self.session.query(Resource).filter(Resource.id == uuid)

        if lock:
            query = query.with_for_update()

        resource = query.one_or_none()

        if resource is None:
            raise errors.UnknownResource(resource_id)

        if not self.is_resource_visible(resource, organization_id):
            raise errors.UnknownResource(resource_id)

        return resource

    def resources(
        self,
        organization_id: UUID | None = None,
        search: str | None = None
    ) -> list[Resource]:
        """ Returns the resources visible to the given organization ordered
        by name. The search term is matched against name and type.

        """
        query = self.session.query(Resource)

        if search:
            term = f'%{search.strip()}%'
            query = query.filter(or_(
                Resource.name.ilike(term),
                cast(Resource.type, types.Text()).ilike(term)
            ))

        query = query.order_by(Resource.name, Resource.id)

        return [
            resource for resource in query
            if self.is_resource_visible(resource, organization_id)
        ]

    def add(
        self,
        name: str,
        type: ResourceType,
        total_quantity: int = 1,
        max_concurrent_usage: int | None = None,
        organization_id: UUID | None = None,
        description: str | None = None,
        data: dict[str, Any] | None = None
    ) -> Resource:
        """ Adds a new resource. The resource is flushed, not committed.

        Shareable resources need a ``max_concurrent_usage`` of at least
        one, the other types must not have one.

        """
        if type not in RESOURCE_TYPES:
            raise errors.InvalidResourceError(f'Unknown type: {type}')

        if isinstance(total_quantity, bool):
            raise errors.InvalidResourceError(
                f'Invalid total quantity: {total_quantity}'
            )

        if not isinstance(total_quantity, int) or total_quantity < 0:
            raise errors.InvalidResourceError(
                f'Invalid total quantity: {total_quantity}'
            )

        if type == 'shareable':
            if not max_concurrent_usage or max_concurrent_usage < 1:
                raise errors.InvalidResourceError(
                    'Shareable resources require a max_concurrent_usage'
                )
        elif max_concurrent_usage is not None:
            raise errors.InvalidResourceError(
                'Only shareable resources have a max_concurrent_usage'
            )

        resource = Resource()
        resource.id = new_uuid()
        resource.name = name
        resource.description = description
        resource.type = type
        resource.total_quantity = total_quantity
        resource.max_concurrent_usage = max_concurrent_usage
        resource.organization_id = organization_id
        resource.data = data

        self.session.add(resource)
        self.session.flush()

        log.debug('Added resource %s (%s)', resource.id, type)

        return resource
