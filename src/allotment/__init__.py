from __future__ import annotations

from allotment.context.registry import create_default_registry
from allotment.db import new_allocator

registry = create_default_registry()

__version__ = '0.1.0'
__all__ = (
    'new_allocator',
    'registry'
)
