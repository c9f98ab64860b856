"""Base abstract model shared by the order lifecycle tables.

``BaseModel`` provides a UUIDv7 primary key and a ``created_at`` stamp.
Timestamps are plain fields with a ``timezone.now`` default rather than
``auto_now``: the aggregate writes ``updated_at`` from its injected clock
and the ORM must not overwrite it on save.
"""

from __future__ import annotations

import uuid6
from django.db import models
from django.utils import timezone


class BaseModel(models.Model):
    """Abstract base with a time-ordered UUIDv7 primary key."""

    id = models.UUIDField(
        primary_key=True,
        default=uuid6.uuid7,
        editable=False,
    )
    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        abstract = True
