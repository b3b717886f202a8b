from __future__ import annotations


from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from uuid import UUID

    from allotment.db.models import Resource


class Visibility:
    """ Decides which resources an organization may see and book.

    Global resources are visible to everyone, scoped resources only to their
    organization. Callers without an organization are system callers and
    see everything.

    Replace the ``visibility`` service of a context to change this.

    """

    @staticmethod
    def is_resource_visible(
        resource: Resource,
        organization_id: UUID | None
    ) -> bool:
        if organization_id is None or resource.organization_id is None:
            return True

        return resource.organization_id == organization_id
