# usher/services/usages.py
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from usher.core.config import UsherSettings, get_settings
from usher.core.errors import InvitationNotFoundError
from usher.models import Invitation, InvitationUsage
from usher.schemas import enum_value, validate_usage

logger = logging.getLogger("usher")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _clean_limit(limit: Optional[int]) -> Optional[int]:
    if limit is None:
        return None
    if not isinstance(limit, int) or isinstance(limit, bool) or limit <= 0:
        raise ValueError(f"limit must be a positive integer, got {limit!r}")
    return limit


class InvitationUsageService:
    """Records and queries entity interactions with invitations."""

    def __init__(
        self,
        db: Session,
        settings: Optional[UsherSettings] = None,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.db = db
        self.settings = settings or get_settings()
        self.clock = clock

    def _filtered(
        self,
        invitation: Invitation,
        *,
        entity_type: Any = None,
        entity_id: Optional[str] = None,
        action: Any = None,
    ):
        stmt = select(InvitationUsage).where(InvitationUsage.invitation_id == invitation.id)
        if entity_id is not None:
            stmt = stmt.where(InvitationUsage.entity_id == str(entity_id))
        if entity_type is not None:
            stmt = stmt.where(InvitationUsage.entity_type == enum_value(entity_type))
        if action is not None:
            stmt = stmt.where(InvitationUsage.action == enum_value(action))
        return stmt

    def track_invitation_usage(
        self,
        invitation_or_token: Union[Invitation, str],
        entity_type: Any,
        entity_id: Any,
        action: Any,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> InvitationUsage:
        """
        Record that an entity performed `action` on an invitation.

        `invitation_or_token` is an Invitation or its token; an unknown token
        raises InvitationNotFoundError. entity_type and action are checked
        against settings.valid_usage_entity_types / valid_usage_actions when
        those are configured.
        """
        if isinstance(invitation_or_token, Invitation):
            invitation = invitation_or_token
        else:
            invitation = (
                self.db.execute(select(Invitation).where(Invitation.token == invitation_or_token))
                .scalars()
                .first()
            )
            if invitation is None:
                raise InvitationNotFoundError()

        record = validate_usage(
            {
                "invitation_id": invitation.id,
                "entity_type": entity_type,
                "entity_id": entity_id,
                "action": action,
                "metadata": metadata,
            },
            valid_entity_types=self.settings.valid_usage_entity_types,
            valid_actions=self.settings.valid_usage_actions,
        )

        now = self.clock()
        usage = InvitationUsage(
            invitation_id=record.invitation_id,
            entity_type=record.entity_type,
            entity_id=record.entity_id,
            action=record.action,
            usage_metadata=record.metadata,
            inserted_at=now,
            updated_at=now,
        )
        self.db.add(usage)
        self.db.commit()
        self.db.refresh(usage)

        logger.info(
            "usher_usage_tracked invitation_id=%s entity_type=%s action=%s",
            usage.invitation_id,
            usage.entity_type,
            usage.action,
        )
        return usage

    def list_invitation_usages(
        self,
        invitation: Invitation,
        *,
        entity_type: Any = None,
        entity_id: Optional[str] = None,
        action: Any = None,
        limit: Optional[int] = None,
    ) -> List[InvitationUsage]:
        """Usages of an invitation, newest first."""
        stmt = self._filtered(
            invitation, entity_type=entity_type, entity_id=entity_id, action=action
        ).order_by(InvitationUsage.inserted_at.desc())

        limit = _clean_limit(limit)
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(self.db.execute(stmt).scalars().all())

    def list_invitation_usages_by_unique_entity(
        self,
        invitation: Invitation,
        *,
        entity_type: Any = None,
        entity_id: Optional[str] = None,
        action: Any = None,
        limit: Optional[int] = None,
    ) -> List[Tuple[str, List[Dict[str, Any]]]]:
        """
        Usages grouped per entity_id: [(entity_id, [usage dict, ...]), ...].

        Entities are ordered by their most recent usage and each group lists
        usages newest first. `limit` caps the number of entities.
        """
        limit = _clean_limit(limit)
        stmt = self._filtered(
            invitation, entity_type=entity_type, entity_id=entity_id, action=action
        ).order_by(InvitationUsage.inserted_at.desc())

        grouped: Dict[str, List[Dict[str, Any]]] = {}
        for usage in self.db.execute(stmt).scalars():
            if usage.entity_id not in grouped:
                if limit is not None and len(grouped) >= limit:
                    continue
                grouped[usage.entity_id] = []
            grouped[usage.entity_id].append(usage.to_dict())

        return list(grouped.items())

    def entity_used_invitation(
        self,
        invitation: Invitation,
        entity_type: Any,
        entity_id: str,
        action: Any = None,
    ) -> bool:
        stmt = self._filtered(
            invitation, entity_type=entity_type, entity_id=entity_id, action=action
        ).with_only_columns(func.count(InvitationUsage.id))
        return (self.db.execute(stmt).scalar() or 0) > 0
